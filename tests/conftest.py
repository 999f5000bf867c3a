"""
Test configuration and fixtures.

Provides:
- Fresh in-memory SQLite schema per test
- Users per role and session cookie minting
- A fake Telegram Bot API served through httpx.MockTransport
- HTTPX AsyncClients with cookie + CSRF header
"""
import json
import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Generator
from unittest.mock import MagicMock

from cryptography.fernet import Fernet

# Must be set before the app (and its settings) are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode()
os.environ["TELEGRAM_USE_POLLING"] = "false"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = ""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from clarity_mdt.core.deps import COOKIE_NAME, get_db, get_telegram_client, get_telegram_poller
from clarity_mdt.core.security import create_session_token
from clarity_mdt.db.base import Base
from clarity_mdt.db.enums import Role
from clarity_mdt.db.models import Department, User
from clarity_mdt.db.session import SessionLocal, engine
from clarity_mdt.main import app
from clarity_mdt.services import telegram_settings_service
from clarity_mdt.services.telegram_client import TelegramClient
from clarity_mdt.services.telegram_poller import TelegramPoller

CSRF_HEADERS = {"X-Requested-With": "XMLHttpRequest"}
BOT_TOKEN = "123456:TEST-TOKEN"
BOT_NAME = "clarity_mdt_bot"


# =============================================================================
# Fake Telegram Bot API
# =============================================================================

class FakeTelegram:
    """In-memory Bot API: records sent messages and serves queued updates."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.calls: list[str] = []
        self.updates: list[dict] = []
        self.usernames: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(method)
        if self.fail:
            raise httpx.ConnectError("telegram unreachable", request=request)

        payload = json.loads(request.content or b"{}")

        if method == "sendMessage":
            target = str(payload["chat_id"])
            if target in self.unreachable:
                return _error(400, "Bad Request: chat not found")
            if target.startswith("@"):
                if target[1:] not in self.usernames:
                    return _error(400, "Bad Request: chat not found")
                chat_id = self.usernames[target[1:]]
            else:
                chat_id = int(target)
            self.sent.append((str(chat_id), payload["text"]))
            return httpx.Response(200, json={
                "ok": True,
                "result": {
                    "message_id": len(self.sent),
                    "chat": {"id": chat_id, "type": "private"},
                    "text": payload["text"],
                },
            })

        if method == "getUpdates":
            offset = payload.get("offset") or 0
            result = [u for u in self.updates if u["update_id"] >= offset]
            return httpx.Response(200, json={"ok": True, "result": result})

        if method == "getMe":
            return httpx.Response(200, json={
                "ok": True,
                "result": {"id": 123456, "is_bot": True, "username": BOT_NAME},
            })

        return _error(404, "Not Found")

    def sent_to(self, chat_id: str) -> list[str]:
        return [text for cid, text in self.sent if cid == str(chat_id)]


def _error(code: int, description: str) -> httpx.Response:
    return httpx.Response(code, json={"ok": False, "error_code": code, "description": description})


def make_update(update_id: int, chat_id: int, text: str) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "from": {"id": chat_id, "is_bot": False, "first_name": "Test"},
            "chat": {"id": chat_id, "type": "private"},
            "text": text,
        },
    }


@pytest.fixture
def fake_telegram() -> FakeTelegram:
    return FakeTelegram()


@pytest.fixture
def tg_client(fake_telegram: FakeTelegram) -> TelegramClient:
    return TelegramClient(
        BOT_TOKEN,
        base_url="https://telegram.test",
        timeout=1.0,
        transport=httpx.MockTransport(fake_telegram.handler),
    )


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def schema() -> Generator[None, None, None]:
    """Create all tables before each test and drop them after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(schema) -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def department(db: Session) -> Department:
    dept = Department(name="Oncology")
    db.add(dept)
    db.commit()
    return dept


@pytest.fixture
def make_user(db: Session, department: Department):
    def _make(role: Role = Role.CONSULTANT, name: str | None = None, **kwargs) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            login_id=f"{role.value}-{suffix}",
            name=name or f"{role.value.title()} {suffix}",
            role=role.value,
            department_id=kwargs.pop("department_id", department.id),
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def admin(make_user) -> User:
    return make_user(Role.ADMIN, name="Ada Admin")


@pytest.fixture
def coordinator(make_user) -> User:
    return make_user(Role.COORDINATOR, name="Cora Coordinator")


@pytest.fixture
def consultant(make_user) -> User:
    return make_user(Role.CONSULTANT, name="Colin Consultant")


@pytest.fixture
def viewer(make_user) -> User:
    return make_user(Role.VIEWER, name="Vera Viewer")


@pytest.fixture
def telegram_enabled(db: Session):
    """Bot enabled with a stored (encrypted) token."""
    return telegram_settings_service.update_settings(db, {
        "enabled": True,
        "bot_name": BOT_NAME,
        "bot_token": BOT_TOKEN,
        "qr_code_url": "https://cdn.test/qr.png",
    })


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture
def poller() -> Generator[TelegramPoller, None, None]:
    # Background ticks must not share the test connection
    test_poller = TelegramPoller(session_factory=MagicMock, interval=0.01)
    yield test_poller
    test_poller.shutdown()


@asynccontextmanager
async def _client(
    db: Session,
    tg_client: TelegramClient | None,
    poller: TelegramPoller,
    user: User | None = None,
) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_telegram_client] = lambda: tg_client
    app.dependency_overrides[get_telegram_poller] = lambda: poller

    cookies = {}
    if user is not None:
        cookies[COOKIE_NAME] = create_session_token(user.id, user.role, user.token_version)

    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            cookies=cookies,
            headers=CSRF_HEADERS,
        ) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def client_for(db: Session, tg_client: TelegramClient, poller: TelegramPoller):
    """
    Build a client for a given user (None for anonymous).

    Usage:
        async with client_for(consultant) as c: ...
    """
    def _factory(user: User | None = None, telegram: TelegramClient | None = tg_client):
        return _client(db, telegram, poller, user)
    return _factory
