import json
import os
import tempfile

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from loggr.core.context import AppContext
from loggr.core.security import (ADMIN_NONCE_ACTION, LOG_ERROR_NONCE_ACTION,
                                 create_admin_token, create_nonce)
from loggr.database.database_factory import create_engine_for_url
from loggr.main import create_app, startup_app


@pytest.fixture
def temp_db_url():
    db_fd, db_path = tempfile.mkstemp(suffix=".sqlite3")
    url = f"sqlite+aiosqlite:///{db_path}"
    yield url
    os.close(db_fd)
    os.remove(db_path)


@pytest_asyncio.fixture
async def app_context(temp_db_url):
    context = AppContext(create_engine_for_url(temp_db_url))
    await context.schema_manager.ensure_tables()
    yield context
    await context.close()


@pytest_asyncio.fixture
async def db_session(app_context):
    async with app_context.session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def app(app_context):
    # ASGITransport does not run startup events
    app = create_app(app_context)
    await startup_app(app, start_cleanup=False)
    yield app


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_admin_token('admin', user_id=1)}"}


@pytest.fixture
def admin_nonce():
    return create_nonce(ADMIN_NONCE_ACTION)


@pytest.fixture
def post_error(client):
    """POST one record to the ajax endpoint, optionally from a given public IP."""
    async def _post(record, ip=None, nonce=None, headers=None):
        request_headers = dict(headers or {})
        if ip:
            request_headers["X-Forwarded-For"] = ip
        return await client.post("/api/v1/ajax", data={
            "action": "log_error",
            "nonce": nonce if nonce is not None else create_nonce(LOG_ERROR_NONCE_ACTION),
            "error_data": record if isinstance(record, str) else json.dumps(record),
        }, headers=request_headers)
    return _post
