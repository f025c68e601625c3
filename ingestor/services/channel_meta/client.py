import httpx
from loguru import logger
from pydantic import ValidationError

from ingestor.schemas import ChannelInfo


class ChannelApiClient:
    """Read-only client of the channel metadata API.

    `fetch` returns None for unknown or deleted channels and raises on
    transport errors; callers treat both as "skip this channel".
    """

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 10.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._build_headers(),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def fetch(self, channel_id: str) -> ChannelInfo | None:
        async with self._client() as client:
            response = await client.get(f"/api/v1/channels/{channel_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()

        # Accept both a bare channel object and the {"success", "results"} envelope
        if isinstance(data, dict) and "results" in data:
            data = data["results"]
        if not data:
            return None

        try:
            return ChannelInfo.model_validate(data)
        except ValidationError:
            logger.exception("Failed to validate channel metadata for {}", channel_id)
            raise
