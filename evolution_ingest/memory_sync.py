"""
Message persistence with best-effort semantic memory sync.

The primary datastore insert always runs first and its outcome is what
callers act on. The memory service write is bounded (attempts, per-attempt
timeout, exponential backoff) and can never fail the message path: when
the service is not configured it is skipped, when it fails the failure is
logged and reported in the SyncResult.

Only the write side exists. search_context() returns None until a
retrieval contract for the memory service is defined.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from evolution_ingest.bounded_store import BoundedTTLStore
from evolution_ingest.config import settings
from evolution_ingest.metrics import record_memory_sync
from evolution_ingest.schemas import MessageCreate
from evolution_ingest.storage import create_message

logger = logging.getLogger(__name__)


class MemoryStoreError(Exception):
    """The memory service rejected or never acknowledged a document."""
    pass


class SupermemoryClient:
    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._http = http_client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, http_client: Optional[httpx.AsyncClient] = None) -> "SupermemoryClient":
        return cls(
            base_url=settings.SUPERMEMORY_API_URL,
            api_key=settings.SUPERMEMORY_API_KEY,
            timeout=settings.SUPERMEMORY_TIMEOUT_SECONDS,
            max_attempts=settings.SUPERMEMORY_MAX_ATTEMPTS,
            backoff_seconds=settings.SUPERMEMORY_BACKOFF_SECONDS,
            http_client=http_client,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _send(self, url: str, document: Dict[str, Any]) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, json=document, headers=self._headers(), timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, json=document, headers=self._headers(), timeout=self.timeout)

    async def store_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST /v3/documents.

        Timeouts, transport errors, 429 and 5xx are retried; other 4xx
        answers are final.
        """
        url = f"{self.base_url}/v3/documents"
        last_error = "no attempt made"

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._send(url, document)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = repr(e)
            else:
                if response.status_code < 300:
                    try:
                        return response.json()
                    except ValueError:
                        return {}
                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                if response.status_code < 500 and response.status_code != 429:
                    raise MemoryStoreError(last_error)

            logger.warning(f"Memory store attempt {attempt}/{self.max_attempts} failed: {last_error}")
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise MemoryStoreError(last_error)

    async def search_context(self, conversation_id: str, query: Optional[str] = None) -> None:
        return None


class ContextCache:
    """Short-term per-conversation context, advisory only."""

    def __init__(self, store: Optional[BoundedTTLStore] = None):
        self._store = store if store is not None else BoundedTTLStore(
            max_entries=settings.CONTEXT_CACHE_MAX_ENTRIES,
            ttl_seconds=settings.CONTEXT_CACHE_TTL_SECONDS,
        )

    def get(self, conversation_id: str) -> Any:
        return self._store.get(conversation_id)

    def put(self, conversation_id: str, context: Any) -> None:
        self._store.set(conversation_id, context)

    def invalidate(self, conversation_id: str) -> None:
        self._store.pop(conversation_id)


@dataclass
class SyncResult:
    db_error: Optional[str] = None
    duplicate: bool = False
    memory_stored: bool = False
    memory_skipped: bool = False
    memory_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.db_error is None


def build_memory_document(
    message: MessageCreate,
    user_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    doc_metadata: Dict[str, Any] = {
        "conversation_id": message.conversation_id,
        "instance_id": message.instance_id,
        "message_id": message.id,
        "direction": message.direction,
        "role": "user" if message.direction == "incoming" else "assistant",
        "sender_phone": message.sender_phone,
        "receiver_phone": message.receiver_phone,
        "timestamp": message.timestamp,
    }
    if metadata:
        doc_metadata.update(metadata)
    return {
        "content": message.content,
        "containerTag": f"user_{user_id}",
        "metadata": doc_metadata,
        "customId": f"msg_{message.external_id or message.id}",
    }


class OutboundSync:
    def __init__(self, memory: SupermemoryClient, cache: Optional[ContextCache] = None):
        self.memory = memory
        self.cache = cache if cache is not None else ContextCache()

    async def sync_message(
        self,
        db: Session,
        message: MessageCreate,
        user_id: str,
        skip_memory: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        success, duplicate, error = create_message(db, message)
        result = SyncResult(db_error=None if success else (error or "insert failed"), duplicate=duplicate)
        if not success:
            logger.error(f"Error storing message {message.id}: {result.db_error}")

        if skip_memory or duplicate:
            result.memory_skipped = True
            return result

        if not self.memory.configured:
            result.memory_skipped = True
            record_memory_sync("storage_skipped")
            return result

        try:
            await self.memory.store_document(build_memory_document(message, user_id, metadata))
        except MemoryStoreError as e:
            result.memory_error = str(e)
            record_memory_sync("storage_failure")
            logger.warning(f"Memory sync failed for message {message.id}: {e}")
            return result

        result.memory_stored = True
        self.cache.invalidate(message.conversation_id)
        record_memory_sync("storage_success")
        return result
