"""
Evolution API client.

Only the calls the ingestion path needs: the contacts lookup used to resolve
anonymized (LID) identifiers.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from evolution_ingest.config import settings

logger = logging.getLogger(__name__)


class EvolutionAPIError(Exception):
    """The gateway could not be reached or answered with an error."""
    pass


class EvolutionClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        attempts: int = 2,
        backoff_seconds: float = 0.25,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds
        self._http = http_client

    @classmethod
    def from_settings(cls, http_client: Optional[httpx.AsyncClient] = None) -> "EvolutionClient":
        return cls(
            base_url=settings.EVOLUTION_API_BASE_URL,
            api_key=settings.EVOLUTION_API_KEY,
            timeout=settings.EVOLUTION_TIMEOUT_SECONDS,
            attempts=settings.CONTACT_LOOKUP_ATTEMPTS,
            http_client=http_client,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None

        for attempt in range(1, self.attempts + 1):
            try:
                if self._http is not None:
                    response = await self._http.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
                else:
                    async with httpx.AsyncClient() as client:
                        response = await client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                logger.warning(f"Evolution API call failed (attempt {attempt}/{self.attempts}): {path}: {e!r}")
                if attempt < self.attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                continue

            if response.status_code >= 400:
                raise EvolutionAPIError(f"Evolution API Error {response.status_code}: {response.text[:200]}")
            try:
                return response.json()
            except ValueError as e:
                raise EvolutionAPIError(f"Evolution API returned invalid JSON for {path}") from e

        raise EvolutionAPIError(f"Evolution Connection Error: {last_error!r}")

    async def find_contacts(self, instance_name: str, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        POST /chat/findContacts/{instance} with {"where": {...}}.

        Returns the contact records (dicts with remoteJid / pushName).
        """
        if not self.enabled:
            return []

        data = await self._post(f"/chat/findContacts/{instance_name}", {"where": where})

        if isinstance(data, dict):
            data = data.get("contacts") or data.get("data") or []
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]
