import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)
critical_logger = logging.getLogger("loggr.critical")

CriticalListener = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

AUTH_KEYWORDS = ("auth", "login", "password", "credential", "token")


def is_critical(record: Dict[str, Any]) -> bool:
    """Login timeouts, ajax failures on login pages and auth related script errors."""
    error_type = record.get("error_type")
    if error_type == "login_timeout":
        return True
    if error_type == "ajax_error":
        return bool(record.get("is_login_page"))
    if error_type == "javascript_error":
        message = (record.get("error_message") or "").lower()
        return any(keyword in message for keyword in AUTH_KEYWORDS)
    return False


class CriticalNotifier:
    """Fans critical records out to registered listeners without blocking ingestion."""

    def __init__(self):
        self._listeners: List[CriticalListener] = []
        self._tasks: Set[asyncio.Task] = set()

    def add_listener(self, listener: CriticalListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CriticalListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def notify(self, record: Dict[str, Any]) -> None:
        critical_logger.warning(
            f"Critical error: {record.get('error_type')} - {record.get('error_message')} "
            f"on {record.get('page_url') or 'unknown page'}")
        for listener in list(self._listeners):
            try:
                result = listener(record)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Critical error listener failed: {str(e)}", exc_info=True)

    def dispatch(self, record: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule notify() in the background; the caller never waits on listeners."""
        task = asyncio.create_task(self.notify(dict(record)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight notifications, used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
