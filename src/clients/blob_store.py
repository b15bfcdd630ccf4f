"""Google Cloud Storage JSON API client for CI artifact buckets."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol
from urllib.parse import quote

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

_GCS_API = "https://storage.googleapis.com/storage/v1"


class BlobStoreError(RuntimeError):
    """An object listing or download failed."""


class BlobStore(Protocol):
    def list_objects(self, prefix: str, match_glob: str = "") -> AsyncIterator[str]:
        ...

    def open_lines(self, name: str):  # -> AsyncContextManager[AsyncIterator[str]]
        ...


class BlobStoreClient:
    """List and stream objects from one bucket.

    Anonymous access is used when no token is configured, which works for the
    public CI results buckets.
    """

    def __init__(self, bucket: str | None = None, token: str | None = None) -> None:
        self._bucket = bucket or settings.gcs_bucket
        if not self._bucket:
            raise RuntimeError("Blob store not configured — set SIGSYNC_GCS_BUCKET")
        token = token or settings.gcs_token
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0, read=60.0))

    async def list_objects(self, prefix: str, match_glob: str = "") -> AsyncIterator[str]:
        """Yield object names under ``prefix``, optionally filtered by a glob."""
        params = {
            "prefix": prefix,
            "projection": "noAcl",
            "fields": "items(name),nextPageToken",
        }
        if match_glob:
            params["matchGlob"] = match_glob
        url = f"{_GCS_API}/b/{self._bucket}/o"
        while True:
            try:
                resp = await self._client.get(url, params=params, headers=self._headers)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise BlobStoreError(f"listing {prefix} failed: {exc}") from exc
            data = resp.json()
            for item in data.get("items", []):
                yield item["name"]
            page_token = data.get("nextPageToken")
            if not page_token:
                return
            params["pageToken"] = page_token

    @asynccontextmanager
    async def open_lines(self, name: str) -> AsyncIterator[AsyncIterator[str]]:
        """Stream an object's content line by line."""
        url = f"{_GCS_API}/b/{self._bucket}/o/{quote(name, safe='')}"
        async with self._client.stream(
            "GET", url, params={"alt": "media"}, headers=self._headers
        ) as resp:
            if resp.status_code >= 400:
                raise BlobStoreError(f"opening {name} failed: HTTP {resp.status_code}")
            yield resp.aiter_lines()

    async def close(self) -> None:
        await self._client.aclose()
