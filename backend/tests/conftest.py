import json
import os
import tempfile
import time
import warnings
from itertools import count
from urllib.parse import urlencode

import pytest
from sqlalchemy import create_engine

# Set environment variables BEFORE importing app modules
_db_dir = tempfile.mkdtemp(prefix="giftflow-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite+aiosqlite:///{_db_dir}/app.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["BOT_TOKEN"] = "123456:TEST-BOT-TOKEN"
os.environ["SCHEDULER_ENABLED"] = "false"

warnings.filterwarnings("ignore", category=DeprecationWarning)

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from giftflow.core.security import sign_init_data
from giftflow.db.session import Base, get_db
from giftflow.main import app
from giftflow.models.models import User

_telegram_ids = count(100_000)


def pytest_configure(config):
    warnings.filterwarnings("ignore", category=DeprecationWarning)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def session_factory(tmp_path):
    """Fresh SQLite database per test, shared by the app and service-level tests."""
    db_path = tmp_path / "test.db"
    from giftflow.models import models as models_module
    _ = models_module
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield factory
    app.dependency_overrides.clear()
    engine.sync_engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    async def _make_user(first_name: str = "User", **fields) -> User:
        fields.setdefault("telegram_id", next(_telegram_ids))
        fields.setdefault("username", f"user{fields['telegram_id']}")
        fields.setdefault("language", "ru")
        async with session_factory() as session:
            user = User(first_name=first_name, **fields)
            session.add(user)
            await session.commit()
            return user

    return _make_user


def build_init_data(telegram_id: int, *, first_name: str = "User", auth_date: int | None = None, **user_fields) -> str:
    user = {"id": telegram_id, "first_name": first_name, **user_fields}
    fields = {
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps(user, separators=(",", ":")),
    }
    fields["hash"] = sign_init_data(fields)
    return urlencode(fields)


@pytest.fixture
def init_data():
    return build_init_data


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def login(client):
    """Authenticate a Telegram user through POST /auth and return the client."""

    def _login(telegram_id: int | None = None, **user_fields) -> tuple[TestClient, dict]:
        tid = telegram_id if telegram_id is not None else next(_telegram_ids)
        fresh = TestClient(app)
        res = fresh.post("/auth", json={"init_data": build_init_data(tid, **user_fields)})
        assert res.status_code == 200, res.text
        return fresh, res.json()["user"]

    return _login
