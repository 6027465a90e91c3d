"""
Fire-and-forget automation (AI auto-reply) invocation.

The webhook submits work to a BackgroundRunner and answers the gateway
without waiting. Each task logs and drops its own failures.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Coroutine, Dict, Optional, Set

import httpx

from evolution_ingest.config import settings
from evolution_ingest.metrics import record_automation

logger = logging.getLogger(__name__)


class AutomationError(Exception):
    pass


@dataclass
class AutomationRequest:
    conversation_id: str
    instance_id: str
    user_id: str
    message_text: str
    contact_name: Optional[str]
    contact_phone: str

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


class AutomationTrigger:
    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or ""
        self.api_key = api_key
        self.timeout = timeout
        self._http = http_client

    @classmethod
    def from_settings(cls, http_client: Optional[httpx.AsyncClient] = None) -> "AutomationTrigger":
        return cls(
            url=settings.AUTOMATION_URL,
            api_key=settings.AUTOMATION_API_KEY,
            timeout=settings.AUTOMATION_TIMEOUT_SECONDS,
            http_client=http_client,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def invoke(self, request: AutomationRequest) -> None:
        payload = request.to_payload()
        try:
            if self._http is not None:
                response = await self._http.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        except httpx.HTTPError as e:
            raise AutomationError(f"automation call failed: {e!r}") from e

        if response.status_code >= 400:
            raise AutomationError(f"automation returned {response.status_code}: {response.text[:200]}")


class BackgroundRunner:
    """
    Holds references to submitted tasks until they finish so they are not
    garbage collected mid-flight, and logs whatever they raise.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Coroutine[Any, Any, Any], name: str = "background") -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error!r}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; used at shutdown and in tests."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def run_automation(trigger: AutomationTrigger, request: AutomationRequest) -> None:
    """Task body: invoke and log; never raises."""
    try:
        await trigger.invoke(request)
    except AutomationError as e:
        record_automation("failed")
        logger.error(f"Automation failed for conversation {request.conversation_id}: {e}")
        return
    record_automation("completed")
    logger.info(f"Automation invoked for conversation {request.conversation_id}")
