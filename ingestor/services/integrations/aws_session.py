from __future__ import annotations

import aioboto3
from loguru import logger

_session: aioboto3.Session | None = None


def init_aws_session(
    region: str,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
) -> aioboto3.Session:
    """Create the shared aioboto3 session; explicit keys when both are given, else the default chain."""
    global _session
    if access_key_id and secret_access_key:
        _session = aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )
    else:
        _session = aioboto3.Session(region_name=region)
    logger.info("AWS session created for region: {}", region)
    return _session


def get_aws_session(region: str) -> aioboto3.Session:
    if _session is None:
        return init_aws_session(region)
    return _session
