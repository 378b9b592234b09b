import asyncio
import json
import logging
import sys
import threading
from urllib.parse import parse_qs

import httpx
import pytest

from loggr.client import ErrorQueue, ErrorReporter, LoginTimeoutWatcher, RateLimiter, Transport
from loggr.client.capture import classify_exception, exception_record, page_load_record, resource_error_record
from loggr.core.sanitization import STACK_TRACE_MAX_LENGTH

AJAX_URL = "http://test/api/v1/ajax"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingServer:
    """httpx MockTransport handler that decodes the ajax form posts it receives."""

    def __init__(self, success=True):
        self.success = success
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/ajax":
            self.forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"success": self.success})
        if request.url.path.startswith("/fail"):
            return httpx.Response(503, text="upstream down")
        return httpx.Response(200, json={"ok": True})

    @property
    def records(self):
        return [json.loads(raw) for form in self.forms for raw in form["error_data"]]


@pytest.fixture
def server():
    return RecordingServer()


@pytest.fixture
def transport(server):
    return Transport(AJAX_URL, "test-nonce", client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
                     sync_client=httpx.Client(transport=httpx.MockTransport(server)))


@pytest.fixture
def reporter(transport):
    reporter = ErrorReporter(transport, page_url="https://site.test/wp-login.php", user_agent="pytest")
    # Long debounce so records stay inspectable in the queue
    reporter.queue.debounce_seconds = 60
    yield reporter
    reporter.uninstall()
    reporter.queue.cancel_timers()


def test_rate_limiter_sliding_window():
    clock = FakeClock()
    limiter = RateLimiter(max_events=3, window_seconds=60, clock=clock)
    assert [limiter.allow() for _ in range(4)] == [True, True, True, False]
    assert limiter.remaining == 0

    clock.now = 30
    assert limiter.allow() is False
    clock.now = 60
    assert limiter.allow() is True
    assert limiter.remaining == 2
    limiter.reset()
    assert limiter.remaining == 3


@pytest.mark.asyncio
async def test_transport_send_and_batch(transport, server):
    assert await transport.send({"error_type": "error", "error_message": "one"}) is True
    await transport.send_batch([{"error_message": "a"}, {"error_message": "b"}])

    assert server.forms[0]["action"] == ["log_error"]
    assert server.forms[0]["nonce"] == ["test-nonce"]
    assert [r["error_message"] for r in server.records] == ["one", "a", "b"]

    server.success = False
    assert await transport.send({"error_type": "error", "error_message": "two"}) is False
    assert transport.is_ingestion_url(AJAX_URL + "?x=1")
    await transport.aclose()


@pytest.mark.asyncio
async def test_queue_delivers_in_order_with_context(transport, server):
    queue = ErrorQueue(transport, debounce_seconds=0.01,
                       context_provider=lambda: {"session_id": "cel_1_x", "page_url": "/p"})
    for i in range(3):
        assert queue.enqueue({"error_type": "error", "error_message": f"m{i}"}) is True
    await queue.drain()

    assert [r["error_message"] for r in server.records] == ["m0", "m1", "m2"]
    assert all(r["session_id"] == "cel_1_x" for r in server.records)
    assert queue.sent_count == 3
    assert len(server.forms) == 3


@pytest.mark.asyncio
async def test_queue_rate_limit_and_capacity(transport):
    queue = ErrorQueue(transport, limiter=RateLimiter(max_events=2), debounce_seconds=60)
    assert queue.enqueue({"error_message": "a"}) is True
    assert queue.enqueue({"error_message": "b"}) is True
    assert queue.enqueue({"error_message": "c"}) is False
    assert queue.enqueue({}) is False
    queue.cancel_timers()

    queue = ErrorQueue(transport, limiter=RateLimiter(max_events=100), capacity=3, debounce_seconds=60)
    for i in range(5):
        queue.enqueue({"error_message": f"m{i}"})
    assert [r["error_message"] for r in queue.pending()] == ["m2", "m3", "m4"]
    queue.cancel_timers()


@pytest.mark.asyncio
async def test_queue_survives_delivery_failures():
    class FlakyTransport:
        def __init__(self):
            self.calls = 0

        async def send(self, record):
            self.calls += 1
            if self.calls == 1:
                raise httpx.ConnectError("refused")
            return self.calls != 2

    flaky = FlakyTransport()
    queue = ErrorQueue(flaky, debounce_seconds=0.01)
    for i in range(3):
        queue.enqueue({"error_message": f"m{i}"})
    await queue.drain()
    assert flaky.calls == 3
    assert queue.failed_count == 2
    assert queue.sent_count == 1


@pytest.mark.asyncio
async def test_flush_on_unload_sends_newest_ten(transport, server):
    queue = ErrorQueue(transport, limiter=RateLimiter(max_events=100), debounce_seconds=60)
    for i in range(12):
        queue.enqueue({"error_type": "error", "error_message": f"m{i}"})

    task = queue.flush_on_unload()
    await task
    assert len(queue) == 0
    assert len(server.forms) == 1
    assert [r["error_message"] for r in server.records] == [f"m{i}" for i in range(2, 12)]
    assert queue.flush_on_unload() is None


def test_classify_exception():
    assert classify_exception(SyntaxError("x")) == "syntax_error"
    assert classify_exception(TypeError("x")) == "type_error"
    assert classify_exception(NameError("x")) == "reference_error"
    assert classify_exception(UnboundLocalError("x")) == "reference_error"
    assert classify_exception(ValueError("x")) == "error"


def test_exception_record():
    try:
        {}["missing"]
    except KeyError as e:
        record = exception_record(e)
    assert record["error_type"] == "error"
    assert record["error_message"] == "'missing'"
    assert record["error_source"].endswith("test_client.py")
    assert record["error_line"] > 0
    assert record["error_column"] == 0
    assert "KeyError" in record["stack_trace"]
    assert len(record["stack_trace"]) <= STACK_TRACE_MAX_LENGTH


def test_resource_and_page_load_records():
    assert resource_error_record("script", "/a.js")["error_message"] == "Failed to load JavaScript: /a.js"
    assert resource_error_record("link", "/a.css")["error_message"] == "Failed to load CSS: /a.css"
    assert resource_error_record("img", "/a.png")["error_message"] == "Failed to load Image: /a.png"
    assert resource_error_record("video", "/a.mp4")["error_message"] == "Failed to load VIDEO: /a.mp4"
    assert resource_error_record("img", None) is None

    assert page_load_record({"navigationStart": 0, "loadEventEnd": 9000}) is None
    slow = page_load_record({"navigationStart": 1000, "loadEventEnd": 13500, "domContentLoadedEventEnd": 5000,
                             "domainLookupStart": 1010, "domainLookupEnd": 1030})
    assert slow["error_type"] == "performance"
    assert slow["error_message"] == "Slow page load detected: 12.50 seconds"
    assert slow["additional_data"]["dom_ready"] == 4000
    assert slow["additional_data"]["dns_time"] == 20


@pytest.mark.asyncio
async def test_reporter_context_is_attached(reporter):
    context = reporter.context()
    assert context["session_id"].startswith("cel_")
    assert context["is_login_page"] is True
    assert context["user_agent"] == "pytest"

    reporter.report_resource_failure("script", "https://cdn.test/app.js")
    [record] = reporter.queue.pending()
    assert record["error_type"] == "resource_error"


@pytest.mark.asyncio
async def test_excepthooks_report_and_chain(reporter, monkeypatch):
    seen = []
    monkeypatch.setattr(sys, "excepthook", lambda *args: seen.append(args[0]))
    monkeypatch.setattr(threading, "excepthook", lambda args: seen.append(args.exc_type))
    reporter.install()
    assert sys.excepthook == reporter._excepthook

    try:
        raise TypeError("bad operand")
    except TypeError:
        sys.excepthook(*sys.exc_info())
    assert seen == [TypeError]

    worker = threading.Thread(target=lambda: 1 / 0)
    worker.start()
    worker.join()

    assert seen == [TypeError, ZeroDivisionError]
    types = [r["error_type"] for r in reporter.queue.pending()]
    assert types == ["type_error", "error"]

    reporter.uninstall()
    assert sys.excepthook != reporter._excepthook


def test_exit_flush_delivers_crash_outside_event_loop(reporter, server, monkeypatch):
    monkeypatch.setattr(sys, "excepthook", lambda *args: None)
    reporter.install()

    try:
        raise RuntimeError("main thread crashed")
    except RuntimeError:
        sys.excepthook(*sys.exc_info())
    assert len(reporter.queue) == 1

    reporter.flush_at_exit()

    assert len(reporter.queue) == 0
    [record] = server.records
    assert record["error_message"] == "main thread crashed"
    assert record["session_id"] == reporter.session_id


class Unprintable(Exception):
    def __str__(self):
        raise RuntimeError("cannot render")


def test_excepthook_chains_even_when_capture_fails(reporter, monkeypatch):
    seen = []
    monkeypatch.setattr(sys, "excepthook", lambda *args: seen.append(args[0]))
    reporter.install()

    try:
        raise Unprintable()
    except Unprintable:
        sys.excepthook(*sys.exc_info())

    assert seen == [Unprintable]


@pytest.mark.asyncio
async def test_loop_exception_handler(reporter):
    loop = asyncio.get_running_loop()
    reporter.install(loop)
    loop.call_exception_handler({"message": "Task exception was never retrieved",
                                 "exception": ValueError("rejected")})
    [record] = reporter.queue.pending()
    assert record["error_type"] == "unhandledrejection"
    assert record["error_message"] == "rejected"
    reporter.uninstall()
    assert loop.get_exception_handler() is None


@pytest.mark.asyncio
async def test_log_handler_filters_records(reporter):
    reporter.install()
    log = logging.getLogger("shop.checkout")
    log.error("payment widget crashed")
    log.warning("cart is almost full")
    log.warning("coupon lookup failed")
    logging.getLogger("httpx").error("ignored transport noise")

    records = reporter.queue.pending()
    assert [(r["error_type"], r["error_message"]) for r in records] == [
        ("console.error", "payment widget crashed"),
        ("console.warn", "coupon lookup failed"),
    ]


@pytest.mark.asyncio
async def test_httpx_hooks_report_failed_responses(reporter, server):
    async with httpx.AsyncClient(transport=httpx.MockTransport(server),
                                 event_hooks=reporter.httpx_event_hooks()) as http:
        await http.get("http://test/ok")
        await http.get("http://test/fail/resource")
        await http.post(AJAX_URL, data={"action": "noop"})

    [record] = reporter.queue.pending()
    assert record["error_type"] == "fetch_error"
    assert record["error_message"] == "Fetch failed: 503 Service Unavailable"
    details = json.loads(record["additional_data"])
    assert details["response_status"] == 503
    assert details["response_text"] == "upstream down"


@pytest.mark.asyncio
async def test_capturing_transport_reports_connection_errors(reporter):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    wrapped = reporter.wrap_transport(httpx.MockTransport(refuse))
    async with httpx.AsyncClient(transport=wrapped) as http:
        with pytest.raises(httpx.ConnectError):
            await http.get("http://api.test/items")

    [record] = reporter.queue.pending()
    assert record["error_type"] == "fetch_error"
    assert record["error_message"] == "connection refused"


@pytest.mark.asyncio
async def test_login_timeout_watcher(reporter):
    watcher = LoginTimeoutWatcher(reporter, timeout_seconds=0.01, spinner_probe=lambda: True)
    watcher.arm("alice")
    assert watcher.armed
    await asyncio.sleep(0.05)

    [record] = reporter.queue.pending()
    assert record["error_type"] == "login_timeout"
    assert record["error_message"].endswith("(spinner detected)")
    details = json.loads(record["additional_data"])
    assert details == {"timeout_duration": 0.01, "spinner_detected": True, "username": "alice"}

    quiet = LoginTimeoutWatcher(reporter, timeout_seconds=0.01)
    quiet.arm("bob")
    quiet.disarm()
    left = LoginTimeoutWatcher(reporter, timeout_seconds=0.01, still_on_login_page=lambda: False)
    left.arm("carol")
    await asyncio.sleep(0.05)
    assert len(reporter.queue.pending()) == 1
