"""Global capture hooks for a Python process.

ErrorReporter installs the hooks and turns what they see into error records:

    sys.excepthook / threading.excepthook   uncaught exceptions
    asyncio loop exception handler          unhandled task failures
    logging.Handler on the root logger      ERROR records, and WARNING records
                                            that mention an error keyword
    httpx event hooks / CapturingTransport  failed HTTP calls
    report_resource_failure()               failed resource loads
    LoginTimeoutWatcher                     stuck login attempts
    check_page_load()                       slow page loads

A hook never raises into host code: internal failures are logged at debug
level and the record is dropped.
"""
import asyncio
import atexit
import logging
import sys
import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from loggr.client.queue import ErrorQueue
from loggr.client.transport import Transport, fetch_client_config
from loggr.core.request_context import is_login_page_url
from loggr.core.sanitization import RESPONSE_SNIPPET_MAX_LENGTH, STACK_TRACE_MAX_LENGTH
from loggr.core.utils import create_session_id

logger = logging.getLogger(__name__)

WARNING_KEYWORDS = ("error", "fail", "exception", "critical", "fatal")
SLOW_PAGE_THRESHOLD_MS = 10000
DEFAULT_LOGIN_TIMEOUT = 10

RESOURCE_KINDS = {
    "script": "JavaScript",
    "link": "CSS",
    "img": "Image",
}

# Loggers whose records would feed back into delivery, or that the loop
# exception handler already reports
_SKIPPED_LOGGER_PREFIXES = ("loggr", "httpx", "httpcore", "asyncio")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def classify_exception(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        return "syntax_error"
    if isinstance(exc, TypeError):
        return "type_error"
    if isinstance(exc, NameError):
        # UnboundLocalError is a NameError subclass
        return "reference_error"
    return "error"


def exception_record(exc: BaseException, tb=None) -> Dict[str, Any]:
    tb = tb if tb is not None else exc.__traceback__
    frames = traceback.extract_tb(tb) if tb is not None else []
    last = frames[-1] if frames else None
    stack = "".join(traceback.format_exception(type(exc), exc, tb))
    return {
        "error_type": classify_exception(exc),
        "error_message": str(exc) or type(exc).__name__,
        "error_source": last.filename if last else "",
        "error_line": last.lineno if last else 0,
        "error_column": 0,
        "stack_trace": stack[:STACK_TRACE_MAX_LENGTH],
        "timestamp": _now_iso(),
    }


def ajax_error_record(url: str, method: str = "GET", status: int = 0, status_text: str = "",
                      response_text: str = "", error: Optional[str] = None) -> Dict[str, Any]:
    """Record for a failed XHR style call made outside httpx."""
    return {
        "error_type": "ajax_error",
        "error_message": error or status_text or "AJAX request failed",
        "error_source": url,
        "additional_data": {
            "request_url": url,
            "request_method": method,
            "response_status": status,
            "response_text": (response_text or "")[:RESPONSE_SNIPPET_MAX_LENGTH],
        },
        "timestamp": _now_iso(),
    }


def resource_error_record(tag: str, url: Optional[str]) -> Optional[Dict[str, Any]]:
    if not url:
        return None
    tag = (tag or "").lower()
    kind = RESOURCE_KINDS.get(tag, tag.upper())
    return {
        "error_type": "resource_error",
        "error_message": f"Failed to load {kind}: {url}",
        "error_source": url,
        "timestamp": _now_iso(),
    }


def page_load_record(timing: Mapping[str, float]) -> Optional[Dict[str, Any]]:
    """Navigation timing in ms; a record only when the load took over 10 seconds."""
    def span(end: str, start: str) -> float:
        return float(timing.get(end, 0) or 0) - float(timing.get(start, 0) or 0)

    load_time = span("loadEventEnd", "navigationStart")
    if load_time <= SLOW_PAGE_THRESHOLD_MS:
        return None
    return {
        "error_type": "performance",
        "error_message": f"Slow page load detected: {load_time / 1000:.2f} seconds",
        "additional_data": {
            "load_time": load_time,
            "dom_ready": span("domContentLoadedEventEnd", "navigationStart"),
            "dns_time": span("domainLookupEnd", "domainLookupStart"),
            "connect_time": span("connectEnd", "connectStart"),
            "response_time": span("responseEnd", "requestStart"),
        },
        "timestamp": _now_iso(),
    }


class CaptureLogHandler(logging.Handler):
    """Forwards ERROR records always and WARNING records that look like errors."""

    def __init__(self, reporter: "ErrorReporter"):
        super().__init__(level=logging.WARNING)
        self.reporter = reporter

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if record.name.startswith(_SKIPPED_LOGGER_PREFIXES):
                return
            message = record.getMessage()
            if record.levelno >= logging.ERROR:
                error_type = "console.error"
            elif any(keyword in message.lower() for keyword in WARNING_KEYWORDS):
                error_type = "console.warn"
            else:
                return
            data = {
                "error_type": error_type,
                "error_message": message,
                "error_source": record.pathname,
                "error_line": record.lineno,
                "timestamp": _now_iso(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                data["stack_trace"] = "".join(traceback.format_exception(*record.exc_info))[:STACK_TRACE_MAX_LENGTH]
            elif error_type == "console.error":
                data["stack_trace"] = "".join(traceback.format_stack(limit=15))[:STACK_TRACE_MAX_LENGTH]
            self.reporter.report(data)
        except Exception:
            self.handleError(record)


class CapturingTransport(httpx.AsyncBaseTransport):
    """Wraps an httpx transport so connection level failures are reported too."""

    def __init__(self, reporter: "ErrorReporter", inner: Optional[httpx.AsyncBaseTransport] = None):
        self.reporter = reporter
        self.inner = inner or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self.inner.handle_async_request(request)
        except Exception as e:
            if not self.reporter.is_ingestion_url(request.url):
                self.reporter.report({
                    "error_type": "fetch_error",
                    "error_message": str(e) or "Fetch request failed",
                    "error_source": str(request.url),
                    "stack_trace": "".join(traceback.format_exception(type(e), e, e.__traceback__))[
                        :STACK_TRACE_MAX_LENGTH],
                    "additional_data": {"request_url": str(request.url), "request_method": request.method},
                    "timestamp": _now_iso(),
                })
            raise

    async def aclose(self) -> None:
        await self.inner.aclose()


class LoginTimeoutWatcher:
    """
    Emits a login_timeout record when a login attempt has not left the login
    page after `timeout_seconds`.

    still_on_login_page and spinner_probe are probes supplied by the host: the
    first says whether the attempt is still pending, the second whether a
    busy indicator is showing.
    """

    def __init__(self, reporter: "ErrorReporter",
                 timeout_seconds: int = DEFAULT_LOGIN_TIMEOUT,
                 still_on_login_page: Optional[Callable[[], bool]] = None,
                 spinner_probe: Optional[Callable[[], bool]] = None):
        self.reporter = reporter
        self.timeout_seconds = timeout_seconds
        self.still_on_login_page = still_on_login_page or (lambda: True)
        self.spinner_probe = spinner_probe or (lambda: False)
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, username: str = "") -> None:
        self.disarm()
        self._task = asyncio.get_running_loop().create_task(self._wait(username))

    def disarm(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _wait(self, username: str) -> None:
        await asyncio.sleep(self.timeout_seconds)
        try:
            if not self.still_on_login_page():
                return
            spinner = bool(self.spinner_probe())
        except Exception as e:
            logger.debug(f"Login timeout probe failed: {str(e)}")
            return
        self.reporter.report({
            "error_type": "login_timeout",
            "error_message": f"Login attempt timeout after {self.timeout_seconds} seconds"
                             + (" (spinner detected)" if spinner else ""),
            "additional_data": {
                "timeout_duration": self.timeout_seconds,
                "spinner_detected": spinner,
                "username": username or "",
            },
            "timestamp": _now_iso(),
        })


class ErrorReporter:
    def __init__(self, transport: Transport,
                 queue: Optional[ErrorQueue] = None,
                 page_url: str = "",
                 user_agent: Optional[str] = None,
                 is_login_page: Optional[bool] = None,
                 login_timeout: int = DEFAULT_LOGIN_TIMEOUT):
        self.transport = transport
        self.session_id = create_session_id()
        self.page_url = page_url
        self.user_agent = user_agent or f"loggr-python/{sys.version_info.major}.{sys.version_info.minor}"
        self.is_login_page = is_login_page if is_login_page is not None else is_login_page_url(page_url)
        self.login_timeout = login_timeout
        self.queue = queue or ErrorQueue(transport, context_provider=self.context)

        self._installed = False
        self._previous_excepthook = None
        self._previous_threading_hook = None
        self._previous_loop_handler = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._log_handler: Optional[CaptureLogHandler] = None

    @classmethod
    async def from_server(cls, base_url: str, page_url: str = "", **kwargs) -> "ErrorReporter":
        cfg = await fetch_client_config(base_url, page_url)
        transport = Transport(cfg["ajax_url"], cfg["nonce"])
        return cls(transport, page_url=page_url, is_login_page=cfg.get("is_login_page"),
                   login_timeout=cfg.get("login_timeout", DEFAULT_LOGIN_TIMEOUT), **kwargs)

    def context(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "page_url": self.page_url,
            "user_agent": self.user_agent,
            "is_login_page": self.is_login_page,
        }

    def is_ingestion_url(self, url: Any) -> bool:
        return self.transport.is_ingestion_url(url)

    def report(self, record: Dict[str, Any]) -> bool:
        try:
            return self.queue.enqueue(record)
        except Exception as e:
            logger.debug(f"Failed to queue error record: {str(e)}")
            return False

    # Hooks

    def _excepthook(self, exc_type, exc, tb) -> None:
        try:
            if not issubclass(exc_type, KeyboardInterrupt):
                self.report(exception_record(exc, tb))
        except Exception as e:
            logger.debug(f"Could not capture uncaught exception: {str(e)}")
        finally:
            if self._previous_excepthook is not None:
                self._previous_excepthook(exc_type, exc, tb)

    def _threading_excepthook(self, args) -> None:
        try:
            if args.exc_value is not None and not issubclass(args.exc_type, SystemExit):
                self.report(exception_record(args.exc_value, args.exc_traceback))
        except Exception as e:
            logger.debug(f"Could not capture thread exception: {str(e)}")
        finally:
            if self._previous_threading_hook is not None:
                self._previous_threading_hook(args)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        try:
            exc = context.get("exception")
            message = str(exc) if exc is not None and str(exc) else context.get("message") or "Unhandled promise rejection"
            record = {
                "error_type": "unhandledrejection",
                "error_message": message,
                "timestamp": _now_iso(),
            }
            if exc is not None:
                record["stack_trace"] = "".join(
                    traceback.format_exception(type(exc), exc, exc.__traceback__))[:STACK_TRACE_MAX_LENGTH]
            self.report(record)
        except Exception as e:
            logger.debug(f"Could not capture loop exception: {str(e)}")
        finally:
            if self._previous_loop_handler is not None:
                self._previous_loop_handler(loop, context)
            else:
                loop.default_exception_handler(context)

    async def _on_response(self, response: httpx.Response) -> None:
        try:
            if response.is_success or self.is_ingestion_url(response.request.url):
                return
            await response.aread()
            self.report({
                "error_type": "fetch_error",
                "error_message": f"Fetch failed: {response.status_code} {response.reason_phrase}",
                "error_source": str(response.request.url),
                "additional_data": {
                    "request_url": str(response.request.url),
                    "request_method": response.request.method,
                    "response_status": response.status_code,
                    "response_text": response.text[:RESPONSE_SNIPPET_MAX_LENGTH],
                },
                "timestamp": _now_iso(),
            })
        except Exception as e:
            logger.debug(f"Response capture failed: {str(e)}")

    def httpx_event_hooks(self) -> Dict[str, list]:
        """event_hooks for an httpx.AsyncClient that report non-2xx responses."""
        return {"response": [self._on_response]}

    def instrument_client(self, client: httpx.AsyncClient) -> httpx.AsyncClient:
        client.event_hooks["response"].append(self._on_response)
        return client

    def wrap_transport(self, inner: Optional[httpx.AsyncBaseTransport] = None) -> CapturingTransport:
        return CapturingTransport(self, inner)

    # One-off reports

    def report_resource_failure(self, tag: str, url: Optional[str]) -> bool:
        record = resource_error_record(tag, url)
        return self.report(record) if record else False

    def check_page_load(self, timing: Mapping[str, float]) -> Optional[Dict[str, Any]]:
        record = page_load_record(timing)
        if record is not None:
            self.report(record)
        return record

    def login_timeout_watcher(self, still_on_login_page: Optional[Callable[[], bool]] = None,
                              spinner_probe: Optional[Callable[[], bool]] = None) -> LoginTimeoutWatcher:
        return LoginTimeoutWatcher(self, self.login_timeout, still_on_login_page, spinner_probe)

    # Lifecycle

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> "ErrorReporter":
        if self._installed:
            return self
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        self._previous_threading_hook = threading.excepthook
        threading.excepthook = self._threading_excepthook

        try:
            self._loop = loop or asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        if self._loop is not None:
            self._previous_loop_handler = self._loop.get_exception_handler()
            self._loop.set_exception_handler(self._loop_exception_handler)
            self.queue._loop = self._loop

        self._log_handler = CaptureLogHandler(self)
        logging.getLogger().addHandler(self._log_handler)
        atexit.register(self.flush_at_exit)
        self._installed = True
        logger.debug("Error capture hooks installed")
        return self

    def uninstall(self) -> None:
        if not self._installed:
            return
        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook
        if threading.excepthook == self._threading_excepthook:
            threading.excepthook = self._previous_threading_hook
        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_loop_handler)
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
        atexit.unregister(self.flush_at_exit)
        self._installed = False

    def flush_on_unload(self) -> Optional[asyncio.Task]:
        return self.queue.flush_on_unload()

    def flush_at_exit(self) -> None:
        """Registered with atexit: post whatever is still queued, synchronously when no loop runs."""
        if not len(self.queue):
            return
        try:
            self.queue.flush_on_unload()
        except Exception as e:
            logger.debug(f"Exit flush failed: {str(e)}")

    async def aclose(self) -> None:
        self.uninstall()
        self.flush_on_unload()
        await self.transport.aclose()
