import asyncio
import datetime
import re

import pytest
from sqlalchemy import update

from loggr.core.config import check_runtime_config, config
from loggr.core.context import AppContext
from loggr.core.security import (ADMIN_NONCE_ACTION, LOG_ERROR_NONCE_ACTION, create_nonce,
                                 get_password_hash, verify_nonce, verify_password)
from loggr.core.services.cache_service import MemoryCache, create_cache
from loggr.core.services.cleanup_service import cleanup_loop, run_cleanup
from loggr.core.services.critical_notifier import CriticalNotifier, is_critical
from loggr.core.utils import create_session_id, to_base36, utcnow
from loggr.database.database_factory import create_engine_for_url
from loggr.database.models import ConsoleError
from loggr.database.repositories.console_error_repository import ConsoleErrorRepository
from loggr.database.repositories.settings_repository import SettingsRepository
from loggr.schemas.settings import Settings


def test_session_id_format():
    session_id = create_session_id()
    assert re.fullmatch(r"cel_\d{13}_[0-9a-z]+", session_id)
    assert create_session_id() != session_id
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"


def test_nonces_are_bound_to_their_action():
    nonce = create_nonce(LOG_ERROR_NONCE_ACTION)
    assert verify_nonce(nonce, LOG_ERROR_NONCE_ACTION) is True
    assert verify_nonce(nonce, ADMIN_NONCE_ACTION) is False
    assert verify_nonce(None) is False
    assert verify_nonce("garbage") is False
    expired = create_nonce(LOG_ERROR_NONCE_ACTION, expires_hours=-1)
    assert verify_nonce(expired) is False


def test_password_hashing():
    hashed = get_password_hash("pw")
    assert verify_password("pw", hashed) is True
    assert verify_password("nope", hashed) is False


def test_production_requires_configured_secret_key(monkeypatch):
    monkeypatch.setattr(config, "SECRET_KEY_FROM_ENV", False)
    monkeypatch.setattr(config, "API_PRODUCTION", True)
    with pytest.raises(RuntimeError, match="SECRET_KEY"):
        check_runtime_config(config)

    monkeypatch.setattr(config, "API_PRODUCTION", False)
    check_runtime_config(config)
    assert config.SECRET_KEY and config.SECRET_KEY != "change-me"

    monkeypatch.setattr(config, "API_PRODUCTION", True)
    monkeypatch.setattr(config, "SECRET_KEY_FROM_ENV", True)
    check_runtime_config(config)


@pytest.mark.parametrize("record,expected", [
    ({"error_type": "login_timeout"}, True),
    ({"error_type": "ajax_error", "is_login_page": True}, True),
    ({"error_type": "ajax_error", "is_login_page": False}, False),
    ({"error_type": "javascript_error", "error_message": "Invalid auth token"}, True),
    ({"error_type": "javascript_error", "error_message": "x is undefined"}, False),
    ({"error_type": "resource_error", "error_message": "login.css"}, False),
])
def test_is_critical(record, expected):
    assert is_critical(record) is expected


@pytest.mark.asyncio
async def test_notifier_isolates_failing_listeners():
    notifier = CriticalNotifier()
    received = []

    def broken(record):
        raise RuntimeError("listener bug")

    async def async_listener(record):
        received.append(("async", record["error_type"]))

    notifier.add_listener(broken)
    notifier.add_listener(async_listener)
    notifier.add_listener(lambda record: received.append(("sync", record["error_type"])))

    notifier.dispatch({"error_type": "login_timeout"})
    await notifier.drain()
    assert received == [("async", "login_timeout"), ("sync", "login_timeout")]

    notifier.remove_listener(async_listener)
    await notifier.notify({"error_type": "login_timeout"})
    assert len(received) == 3


@pytest.mark.asyncio
async def test_memory_cache_expiry_and_prefix_delete():
    cache = MemoryCache()
    await cache.set("cel_stats_a", {"total": 1}, expire=60)
    await cache.set("cel_stats_b", {"total": 2}, expire=-1)
    await cache.set("other", 1, expire=60)

    assert await cache.get("cel_stats_a") == {"total": 1}
    assert await cache.get("cel_stats_b") is None
    assert await cache.delete_prefix("cel_stats_") == 1
    assert await cache.get("other") == 1
    assert isinstance(create_cache(None), MemoryCache)


@pytest.mark.asyncio
async def test_memory_cache_reclaims_expired_keys_without_reads():
    cache = MemoryCache(sweep_every=5)
    for i in range(4):
        await cache.set(f"cel_session_{i}", "sid", expire=-1)
    assert len(cache) == 4

    await cache.set("cel_session_live", "sid", expire=60)
    assert len(cache) == 1
    assert await cache.get("cel_session_live") == "sid"


@pytest.mark.asyncio
async def test_memory_cache_evicts_oldest_when_full():
    cache = MemoryCache(max_entries=3)
    for i in range(5):
        await cache.set(f"cel_session_{i}", i, expire=60)

    assert len(cache) == 3
    assert await cache.get("cel_session_0") is None
    assert await cache.get("cel_session_1") is None
    assert await cache.get("cel_session_4") == 4


@pytest.mark.asyncio
async def test_session_cache_stays_bounded_across_user_agents(post_error, app_context):
    app_context.cache.max_entries = 20
    for i in range(30):
        response = await post_error({"error_type": "error", "error_message": "boom"},
                                    ip=f"8.8.{i}.8", headers={"User-Agent": f"UA-{i}"})
        assert response.json()["success"] is True

    assert len(app_context.cache) <= 20


@pytest.mark.asyncio
async def test_run_cleanup_uses_stored_retention(app_context):
    async with app_context.session_maker() as session:
        repo = ConsoleErrorRepository(session)
        old = await repo.insert_error({"error_type": "error", "error_message": "old", "user_ip": "8.8.8.8"})
        await repo.insert_error({"error_type": "error", "error_message": "new", "user_ip": "8.8.8.8"})
        await session.execute(
            update(ConsoleError).where(ConsoleError.id == old.id)
            .values(timestamp=utcnow() - datetime.timedelta(days=10))
            .execution_options(synchronize_session=False))
        await session.commit()
        await SettingsRepository(session).save_settings(Settings(auto_cleanup_days=0))

    assert await run_cleanup(app_context.session_maker, app_context.cache) == 0

    async with app_context.session_maker() as session:
        await SettingsRepository(session).save_settings(Settings(auto_cleanup_days=7))
    assert await run_cleanup(app_context.session_maker, app_context.cache) == 1


@pytest.mark.asyncio
async def test_cleanup_loop_runs_until_cancelled(app_context, monkeypatch):
    calls = []

    async def fake_cleanup(session_maker, cache=None):
        calls.append(session_maker)
        if len(calls) == 2:
            raise RuntimeError("database away")
        return 0

    monkeypatch.setattr("loggr.core.services.cleanup_service.run_cleanup", fake_cleanup)
    task = asyncio.create_task(cleanup_loop(app_context.session_maker, interval_seconds=0.01))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    # A failed run does not stop the schedule
    assert len(calls) > 2


@pytest.mark.asyncio
async def test_app_context_cleanup_task_lifecycle(temp_db_url):
    context = AppContext(create_engine_for_url(temp_db_url))
    context.start_cleanup(3600)
    task = context.cleanup_task
    assert task is not None and not task.done()
    context.start_cleanup(3600)
    assert context.cleanup_task is task

    await context.close()
    assert task.cancelled()
    assert context.cleanup_task is None
