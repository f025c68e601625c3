"""Distributed live-channel ingestion workers."""

__version__ = "0.1.0"
