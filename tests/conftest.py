import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from nomi.database import set_db_path, init_db
from nomi.services.base import AuthSession, StaticSessionProvider


@pytest.fixture
def temp_db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    Path(path).unlink(missing_ok=True)


@pytest.fixture
def test_settings(temp_db_path):
    from nomi.config import Settings
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_anon_key="anon-test-key",
        storage_backend="local",
        database_url=temp_db_path,
        daily_message_limit=40,
        message_page_size=20,
        message_cache_size=8,
    )


@pytest_asyncio.fixture
async def initialized_db(temp_db_path):
    set_db_path(temp_db_path)
    await init_db()
    yield temp_db_path


@pytest.fixture
def session():
    return AuthSession(user_id="user-1", access_token="token-1")


@pytest.fixture
def sessions(session):
    return StaticSessionProvider(session)
