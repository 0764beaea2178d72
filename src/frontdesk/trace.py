import asyncio
import json
import logging

import httpx

from frontdesk.errors import TraceLoggingFailed

logger = logging.getLogger(__name__)


class TraceRecorder:
    """Sends turn traces and call archives to the trace sink.

    Turn traces are fire-and-forget: ``record_turn`` schedules a background
    task and returns immediately. Each POST retries once after
    ``retry_delay`` seconds; delivery failures are logged, never raised.
    Without a URL, traces go to the log only.
    """

    def __init__(
        self,
        url: str = "",
        secret: str = "",
        timeout: float = 10.0,
        retry_delay: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.retry_delay = retry_delay
        self._tasks: set[asyncio.Task] = set()
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if secret:
                headers["X-Webhook-Secret"] = secret
            self._client = httpx.AsyncClient(headers=headers, timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _post_with_retry(self, path: str, payload: dict, label: str) -> dict:
        """POST with one retry on failure."""
        for attempt in range(2):
            try:
                resp = await self._client.post(f"{self.url}{path}", json=payload)
                resp.raise_for_status()
                return resp.json() if resp.content else {"success": True}
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %.0fs: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    def record_turn(self, payload: dict) -> None:
        if not self.enabled:
            logger.debug("TURN_TRACE|%s", json.dumps(payload, default=str))
            return
        try:
            task = asyncio.get_running_loop().create_task(
                self._post_with_retry("/turns", payload, "Turn trace")
            )
        except RuntimeError as e:
            raise TraceLoggingFailed(f"turn trace not scheduled: {e}") from e
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def archive_call(self, payload: dict) -> bool:
        """Durably archive a finished call. Returns True only on success."""
        if not self.enabled:
            logger.warning("No trace sink configured, call %s not archived", payload.get("call_id"))
            return False
        result = await self._post_with_retry("/calls", payload, "Call archive")
        return not (isinstance(result, dict) and result.get("success") is False)

    async def drain(self):
        """Wait for in-flight turn traces."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        await self.drain()
        await self._client.aclose()
