"""
Backend function transport.

Every capability (voice, video, status, lip sync, compositing) is a named
backend function reachable at:
  POST {SUPABASE_URL}/functions/v1/{name}

One POST per call, never retried. Repetition belongs to the poller.
"""

import os
import logging
from typing import Optional

import httpx

from .errors import CapabilityError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

REQUEST_TIMEOUT = float(os.getenv("FUNCTIONS_TIMEOUT", "60"))


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or None
    if isinstance(body, dict):
        return body.get("error") or body.get("message")
    return None


class FunctionsTransport:
    """
    Thin async client for backend functions.

    Usage:
        transport = FunctionsTransport()
        data = await transport.invoke("generate-voice", {"text": "...", "voiceId": "nova"})
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or SUPABASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else SUPABASE_ANON_KEY
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }

    async def _post(self, url: str, body: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, headers=self._headers(), json=body)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, headers=self._headers(), json=body)

    async def invoke(self, name: str, body: dict) -> dict:
        """
        Invoke a backend function once and return its decoded JSON body.

        Raises:
            CapabilityError: network failure, non-2xx response, or a body
                that is not a JSON object.
        """
        if not self.base_url:
            raise CapabilityError(f"{name}: SUPABASE_URL is not configured")

        url = f"{self.base_url}/functions/v1/{name}"

        try:
            response = await self._post(url, body)
        except httpx.HTTPError as e:
            logger.warning(f"{name} request error: {e}")
            raise CapabilityError(f"{name} request failed", detail=str(e)) from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(f"{name} failed with HTTP {response.status_code}: {detail}")
            raise CapabilityError(
                f"{name} failed with HTTP {response.status_code}",
                detail=detail,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CapabilityError(f"{name} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise CapabilityError(f"{name} returned unexpected payload: {data!r}")
        return data


_default_transport: Optional[FunctionsTransport] = None


def get_transport() -> FunctionsTransport:
    """Lazy process-wide transport built from the environment."""
    global _default_transport
    if _default_transport is None:
        _default_transport = FunctionsTransport()
    return _default_transport
