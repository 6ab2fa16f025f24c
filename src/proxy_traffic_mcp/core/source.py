from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import SourceError
from .models import Snapshot

logger = logging.getLogger(__name__)


class ConnectionSource:
    """
    HTTP client for the proxy controller /connections endpoint.

    The endpoint returns every currently open connection with cumulative
    upload and download counters. Any failure is raised as SourceError so
    the poller can skip the cycle.

    client
      Optional shared httpx.AsyncClient. Tests inject one backed by
      httpx.MockTransport. When omitted a client is created lazily and
      closed by aclose().
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = float(timeout_seconds)
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> dict:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def fetch(self) -> Snapshot:
        client = self._get_client()
        try:
            resp = await client.get(self.url, headers=self._headers(), timeout=self.timeout_seconds)
        except httpx.HTTPError as exc:
            raise SourceError(f"request to {self.url} failed: {exc}") from exc

        if not resp.is_success:
            raise SourceError(f"source returned HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceError(f"source returned invalid JSON: {exc}") from exc

        return Snapshot.from_payload(payload)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
