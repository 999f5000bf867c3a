"""Tests for /profile/telegram, the bot webhook and polling control."""
import pytest

from clarity_mdt.core.config import settings
from clarity_mdt.db.enums import AuditEventType, Role
from clarity_mdt.db.models import AuditLog
from clarity_mdt.services import telegram_link_service, verification_service
from clarity_mdt.services.telegram_link_service import CONFIRMATION, REPLY_INVALID_CODE

from tests.conftest import BOT_NAME, make_update


# =============================================================================
# Profile linking
# =============================================================================

@pytest.mark.asyncio
async def test_requires_session(client_for):
    async with client_for() as c:
        response = await c.get("/profile/telegram")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_status_unlinked(client_for, consultant):
    async with client_for(consultant) as c:
        response = await c.get("/profile/telegram")

    assert response.status_code == 200
    assert response.json() == {"linked": False, "telegram_id": None, "pending_code_expires_at": None}


@pytest.mark.asyncio
async def test_bot_info_disabled(client_for, consultant):
    async with client_for(consultant) as c:
        disabled = await c.get("/profile/telegram/bot-info")
    assert disabled.json() == {"enabled": False, "bot_username": None, "qr_code_url": None}


@pytest.mark.asyncio
async def test_bot_info_enabled(client_for, consultant, telegram_enabled):
    async with client_for(consultant) as c:
        response = await c.get("/profile/telegram/bot-info")

    assert response.json() == {
        "enabled": True,
        "bot_username": BOT_NAME,
        "qr_code_url": "https://cdn.test/qr.png",
    }


@pytest.mark.asyncio
async def test_generate_code(client_for, consultant, telegram_enabled, db):
    async with client_for(consultant) as c:
        response = await c.post("/profile/telegram/generate-code")

    assert response.status_code == 200
    data = response.json()
    assert len(data["code"]) == 8
    assert data["bot_username"] == BOT_NAME
    assert data["expires_in"] == 10
    assert data["deep_link"] == f"https://t.me/{BOT_NAME}?start={data['code']}"
    assert verification_service.find(db, consultant.id).code == data["code"]


@pytest.mark.asyncio
async def test_generate_code_when_not_configured(client_for, consultant):
    async with client_for(consultant) as c:
        response = await c.post("/profile/telegram/generate-code")

    assert response.status_code == 400
    assert "not configured" in response.json()["detail"]


@pytest.mark.asyncio
async def test_generate_code_without_csrf_header(client_for, consultant, telegram_enabled):
    async with client_for(consultant) as c:
        response = await c.post(
            "/profile/telegram/generate-code", headers={"X-Requested-With": ""}
        )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_send_code_then_verify(client_for, consultant, telegram_enabled, fake_telegram, db):
    async with client_for(consultant) as c:
        sent = await c.post("/profile/telegram/send-code", json={"telegram_identifier": "555"})
        assert sent.status_code == 200

        code = verification_service.find(db, consultant.id).code
        assert code in fake_telegram.sent_to("555")[0]

        verified = await c.post("/profile/telegram/verify-code", json={"code": code.lower()})
        assert verified.status_code == 200
        assert verified.json() == {
            "message": "Telegram account linked successfully",
            "telegram_id": "555",
            "confirmation_sent": True,
        }

        status = await c.get("/profile/telegram")
        assert status.json()["linked"] is True

    audit = db.query(AuditLog).filter(AuditLog.action == AuditEventType.TELEGRAM_LINKED.value).one()
    assert audit.user_id == consultant.id
    # Chat ids are masked in the audit trail
    assert audit.details == {"chat_id": "****"}


@pytest.mark.asyncio
async def test_send_code_without_bot(client_for, consultant):
    async with client_for(consultant, telegram=None) as c:
        response = await c.post("/profile/telegram/send-code", json={"telegram_identifier": "555"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_send_code_chat_not_found(client_for, consultant, telegram_enabled, fake_telegram):
    fake_telegram.unreachable.add("555")

    async with client_for(consultant) as c:
        response = await c.post("/profile/telegram/send-code", json={"telegram_identifier": "555"})

    assert response.status_code == 400
    assert f"@{BOT_NAME}" in response.json()["detail"]


@pytest.mark.asyncio
async def test_verify_wrong_code(client_for, consultant, telegram_enabled):
    async with client_for(consultant) as c:
        await c.post("/profile/telegram/send-code", json={"telegram_identifier": "555"})
        response = await c.post("/profile/telegram/verify-code", json={"code": "00000000"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid verification code"


@pytest.mark.asyncio
async def test_unlink_and_cancel(client_for, make_user, db):
    linked = make_user(Role.CONSULTANT, telegram_id="42")

    async with client_for(linked) as c:
        response = await c.delete("/profile/telegram")
        assert response.status_code == 200
        assert response.json()["linked"] is False

        cancelled = await c.post("/profile/telegram/cancel")
        assert cancelled.json() == {"cancelled": False}

    db.refresh(linked)
    assert linked.telegram_id is None
    assert db.query(AuditLog).filter(
        AuditLog.action == AuditEventType.TELEGRAM_UNLINKED.value
    ).count() == 1


# =============================================================================
# Webhook
# =============================================================================

@pytest.mark.asyncio
async def test_webhook_links_chat(client_for, consultant, db, fake_telegram):
    verification = telegram_link_service.generate_code(db, consultant)

    async with client_for() as c:
        response = await c.post(
            "/telegram/webhook", json=make_update(1, 777, f"/start {verification.code}")
        )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    db.refresh(consultant)
    assert consultant.telegram_id == "777"
    assert fake_telegram.sent_to("777") == [CONFIRMATION.format(name="Colin Consultant")]


@pytest.mark.asyncio
async def test_webhook_replies_to_unknown_code(client_for, fake_telegram):
    async with client_for() as c:
        response = await c.post("/telegram/webhook", json=make_update(1, 777, "DEADBEEF"))

    assert response.status_code == 200
    assert fake_telegram.sent_to("777") == [REPLY_INVALID_CODE]


@pytest.mark.asyncio
@pytest.mark.parametrize("update", [
    {"update_id": 5, "edited_message": {}},
    {"update_id": 6, "message": "hello"},
    {"update_id": 7, "message": {"text": "ABCD1234", "from": "777"}},
    {"update_id": 8, "message": {"text": "ABCD1234", "from": {"id": {"nested": 1}}}},
    {"update_id": 9, "message": {"text": ["ABCD1234"], "chat": {"id": 777}}},
])
async def test_webhook_acknowledges_unusable_updates(client_for, fake_telegram, update):
    async with client_for() as c:
        response = await c.post("/telegram/webhook", json=update)

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert fake_telegram.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
async def test_webhook_rejects_malformed_body(client_for, body):
    async with client_for() as c:
        response = await c.post(
            "/telegram/webhook", content=body, headers={"Content-Type": "application/json"}
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_secret(client_for, monkeypatch, fake_telegram):
    monkeypatch.setattr(settings, "TELEGRAM_WEBHOOK_SECRET", "s3cret")
    update = make_update(1, 777, "hello")

    async with client_for() as c:
        missing = await c.post("/telegram/webhook", json=update)
        wrong = await c.post(
            "/telegram/webhook", json=update,
            headers={"X-Telegram-Bot-Api-Secret-Token": "nope"},
        )
        ok = await c.post(
            "/telegram/webhook", json=update,
            headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
        )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert len(fake_telegram.sent_to("777")) == 1


# =============================================================================
# Polling control
# =============================================================================

@pytest.mark.asyncio
async def test_polling_is_admin_only(client_for, coordinator):
    async with client_for(coordinator) as c:
        response = await c.post("/telegram/polling")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_starts_and_stops_polling(client_for, admin, poller):
    async with client_for(admin) as c:
        started = await c.post("/telegram/polling")
        assert started.status_code == 200
        assert started.json()["running"] is True
        assert started.json()["persistent"] is True

        stopped = await c.delete("/telegram/polling")
        assert stopped.json()["running"] is False

    assert poller.is_running is False


@pytest.mark.asyncio
async def test_start_polling_without_bot(client_for, admin):
    async with client_for(admin, telegram=None) as c:
        response = await c.post("/telegram/polling")
    assert response.status_code == 400
