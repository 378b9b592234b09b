import datetime

import pytest
from sqlalchemy import update

from loggr.core.services.cache_service import MemoryCache, STATS_PREFIX
from loggr.core.utils import utcnow
from loggr.database.models import ConsoleError
from loggr.database.repositories.console_error_repository import ConsoleErrorRepository
from loggr.database.repositories.ignore_pattern_repository import IgnorePatternRepository
from loggr.database.repositories.ip_mapping_repository import IpMappingRepository
from loggr.database.repositories.settings_repository import SettingsRepository
from loggr.schemas.settings import Settings


def make_error(**overrides):
    record = {
        "error_type": "javascript_error",
        "error_message": "boom",
        "error_source": "https://site.test/app.js",
        "page_url": "https://site.test/",
        "user_ip": "8.8.8.8",
        "is_login_page": False,
    }
    record.update(overrides)
    return record


async def age_rows(db, ids, delta):
    await db.execute(
        update(ConsoleError)
        .where(ConsoleError.id.in_(ids))
        .values(timestamp=utcnow() - delta)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


@pytest.mark.asyncio
async def test_insert_uses_server_timestamp(db_session):
    repo = ConsoleErrorRepository(db_session)
    before = utcnow()
    stored = await repo.insert_error(make_error(timestamp=datetime.datetime(2001, 1, 1), id=999, bogus="x"))
    assert stored.id != 999
    assert stored.timestamp >= before.replace(microsecond=0)

    fetched = await repo.get_error(stored.id)
    assert fetched.error_message == "boom"
    assert await repo.get_error(stored.id + 100) is None


@pytest.mark.asyncio
async def test_get_errors_filters_and_ordering(db_session):
    repo = ConsoleErrorRepository(db_session)
    await repo.insert_error(make_error(error_message="first timeout", error_type="ajax_error"))
    await repo.insert_error(make_error(error_message="second", is_login_page=True))
    await repo.insert_error(make_error(error_message="third 100%_done"))

    assert await repo.get_error_count() == 3
    assert [e.error_message for e in await repo.get_errors(error_type="ajax_error")] == ["first timeout"]
    assert [e.error_message for e in await repo.get_errors(is_login_page=True)] == ["second"]
    assert [e.error_message for e in await repo.get_errors(search="timeout")] == ["first timeout"]
    # LIKE wildcards in the search term are literal
    assert [e.error_message for e in await repo.get_errors(search="100%_")] == ["third 100%_done"]

    ascending = await repo.get_errors(orderby="id", order="ASC")
    assert [e.error_message for e in ascending] == ["first timeout", "second", "third 100%_done"]
    # Unknown order columns fall back to timestamp instead of failing
    assert len(await repo.get_errors(orderby="error_message; DROP TABLE x")) == 3
    assert len(await repo.get_errors(limit=1, offset=1)) == 1


@pytest.mark.asyncio
async def test_rate_limit_threshold(db_session):
    repo = ConsoleErrorRepository(db_session)
    for _ in range(9):
        await repo.insert_error(make_error(user_ip="1.1.1.1"))
    assert await repo.is_rate_limited("1.1.1.1", threshold=10) is False

    await repo.insert_error(make_error(user_ip="1.1.1.1"))
    assert await repo.is_rate_limited("1.1.1.1", threshold=10) is True
    assert await repo.is_rate_limited("9.9.9.9", threshold=10) is False


@pytest.mark.asyncio
async def test_rate_limit_window_expires(db_session):
    repo = ConsoleErrorRepository(db_session)
    ids = [(await repo.insert_error(make_error(user_ip="1.1.1.1"))).id for _ in range(10)]
    await age_rows(db_session, ids, datetime.timedelta(minutes=2))
    assert await repo.is_rate_limited("1.1.1.1", threshold=10) is False


@pytest.mark.asyncio
async def test_check_and_cleanup_evicts_oldest(db_session):
    repo = ConsoleErrorRepository(db_session)
    ids = [(await repo.insert_error(make_error(error_message=f"e{i}"))).id for i in range(8)]

    assert await repo.check_and_cleanup(10) == 0
    assert await repo.check_and_cleanup(5) == 3
    remaining = await repo.get_errors(orderby="id", order="ASC")
    assert [e.id for e in remaining] == ids[3:]


@pytest.mark.asyncio
async def test_cleanup_old_logs(db_session):
    repo = ConsoleErrorRepository(db_session)
    old = await repo.insert_error(make_error(error_message="old"))
    await repo.insert_error(make_error(error_message="new"))
    await age_rows(db_session, [old.id], datetime.timedelta(days=40))

    assert await repo.cleanup_old_logs(0) == 0
    assert await repo.cleanup_old_logs(30) == 1
    assert [e.error_message for e in await repo.get_errors()] == ["new"]


@pytest.mark.asyncio
async def test_delete_and_clear(db_session):
    repo = ConsoleErrorRepository(db_session)
    first = await repo.insert_error(make_error())
    await repo.insert_error(make_error())

    assert await repo.delete_error(first.id) is True
    assert await repo.delete_error(first.id) is False
    assert await repo.clear_all_logs() == 1
    assert await repo.get_error_count() == 0


@pytest.mark.asyncio
async def test_backfill_associated_user(db_session):
    repo = ConsoleErrorRepository(db_session)
    recent = await repo.insert_error(make_error(user_ip="5.5.5.5"))
    old = await repo.insert_error(make_error(user_ip="5.5.5.5"))
    known = await repo.insert_error(make_error(user_ip="5.5.5.5", user_id=3))
    await age_rows(db_session, [old.id], datetime.timedelta(hours=2))

    assert await repo.backfill_associated_user("5.5.5.5", 42, window_minutes=30) == 1
    db_session.expire_all()
    rows = {e.id: e for e in await repo.get_errors(limit=10)}
    assert rows[recent.id].associated_user_id == 42
    assert rows[old.id].associated_user_id is None
    assert rows[known.id].associated_user_id is None

    assert await repo.update_error_associated_user(old.id, 7) is True
    assert await repo.update_error_associated_user(old.id + 100, 7) is False


@pytest.mark.asyncio
async def test_error_stats_are_cached_until_invalidated(db_session):
    cache = MemoryCache()
    repo = ConsoleErrorRepository(db_session, cache)
    await repo.insert_error(make_error())
    await repo.insert_error(make_error(error_type="resource_error", is_login_page=True))

    stats = await repo.get_error_stats()
    assert stats["total"] == 2
    assert stats["recent_24h"] == 2
    assert stats["login_errors"] == 1
    assert {t["error_type"]: t["count"] for t in stats["by_type"]} == {"javascript_error": 1,
                                                                        "resource_error": 1}

    await repo.insert_error(make_error())
    assert (await repo.get_error_stats())["total"] == 2

    await repo.invalidate_stats_cache()
    assert (await repo.get_error_stats())["total"] == 3
    assert await cache.delete_prefix(STATS_PREFIX) == 1


@pytest.mark.asyncio
async def test_login_history_and_stats(db_session):
    repo = ConsoleErrorRepository(db_session)
    await repo.insert_error(make_error(error_type="login_success", user_id=1, user_ip="2.2.2.2"))
    await repo.insert_error(make_error(error_type="login_failed_valid_user", user_id=1, user_ip="3.3.3.3"))
    await repo.insert_error(make_error(error_type="login_failed_valid_user", user_id=1, user_ip="3.3.3.3"))
    await repo.insert_error(make_error(error_type="login_failed_invalid_user", user_ip="4.4.4.4"))
    await repo.insert_error(make_error(error_type="javascript_error"))

    assert len(await repo.get_login_history()) == 4
    assert len(await repo.get_login_history(success_only=True)) == 1
    assert len(await repo.get_login_history(failed_only=True)) == 3
    assert len(await repo.get_login_history(ip_address="3.3.3.3")) == 2

    stats = await repo.get_login_stats()
    assert stats["successful_logins"] == 1
    assert stats["failed_logins"] == 3
    assert stats["top_failed_ips"][0] == {"user_ip": "3.3.3.3", "attempts": 2}
    assert stats["most_targeted_users"] == [{"user_id": 1, "attempts": 2}]


@pytest.mark.asyncio
async def test_ip_mapping_upsert(db_session):
    repo = IpMappingRepository(db_session)
    assert await repo.track_user_ip(7, "6.6.6.6") is True
    assert await repo.track_user_ip(7, "6.6.6.6") is True
    assert await repo.track_user_ip(8, "6.6.6.6") is True
    assert await repo.track_user_ip(0, "6.6.6.6") is False

    db_session.expire_all()
    mappings = {m.user_id: m for m in await repo.get_users_by_ip("6.6.6.6")}
    assert mappings[7].login_count == 2
    assert mappings[8].login_count == 1
    assert await repo.get_associated_user_by_ip("6.6.6.6") in (7, 8)
    assert await repo.get_associated_user_by_ip("7.7.7.7") is None
    assert [m.ip_address for m in await repo.get_ips_by_user(7)] == ["6.6.6.6"]


@pytest.mark.asyncio
async def test_ignore_pattern_ordering_and_lifecycle(db_session):
    repo = IgnorePatternRepository(db_session)
    regex = await repo.add_ignore_pattern("regex", "^Script error")
    exact = await repo.add_ignore_pattern("exact_message", "boom")
    exact_newer = await repo.add_ignore_pattern("exact_message", "bang", notes="noise")

    ordered = await repo.get_ignore_patterns()
    assert [p.id for p in ordered] == [exact_newer.id, exact.id, regex.id]

    prioritized = await repo.get_ignore_patterns(priority=["regex"])
    assert prioritized[0].id == regex.id

    toggled = await repo.toggle_ignore_pattern(exact.id)
    assert toggled.is_active is False
    assert exact.id not in [p.id for p in await repo.get_ignore_patterns(active_only=True)]
    assert exact.id in [p.id for p in await repo.get_ignore_patterns(active_only=False)]
    assert await repo.toggle_ignore_pattern(9999) is None

    db_session.expire_all()
    edited_at = (await repo.get_pattern(regex.id)).updated_at
    await repo.record_ignored(regex.id)
    await repo.record_ignored(regex.id)
    db_session.expire_all()
    refreshed = await repo.get_pattern(regex.id)
    assert refreshed.ignore_count == 2
    assert refreshed.last_ignored is not None
    # Suppression counters are not edits
    assert refreshed.updated_at == edited_at

    assert await repo.delete_ignore_pattern(regex.id) is True
    assert await repo.delete_ignore_pattern(regex.id) is False


@pytest.mark.asyncio
async def test_settings_defaults_and_clamping(db_session):
    repo = SettingsRepository(db_session)
    assert await repo.get_settings() == Settings()

    saved = await repo.save_settings(Settings(login_timeout_seconds=2, max_log_entries=50000,
                                              auto_cleanup_days=-5, enable_site_monitoring=True))
    assert saved.login_timeout_seconds == 5
    assert saved.max_log_entries == 10000
    assert saved.auto_cleanup_days == 0

    loaded = await repo.get_settings()
    assert loaded == saved

    await repo.save_settings(Settings(login_timeout_seconds=90))
    assert (await repo.get_settings()).login_timeout_seconds == 60
