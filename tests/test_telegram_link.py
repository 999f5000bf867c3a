"""Tests for Telegram account linking (in-app and bot paths)."""
from datetime import timedelta

import httpx
import pytest

from clarity_mdt.db.enums import Role
from clarity_mdt.db.models import TelegramVerification
from clarity_mdt.services import telegram_link_service, verification_service
from clarity_mdt.services.telegram_link_service import (
    CONFIRMATION,
    REPLY_ALREADY_LINKED,
    REPLY_EXPIRED,
    REPLY_INVALID_CODE,
    REPLY_PROMPT,
    LinkError,
)
from clarity_mdt.services.telegram_client import TelegramClient
from clarity_mdt.services.verification_service import MatchReason
from clarity_mdt.utils import utcnow


# =============================================================================
# Link committer
# =============================================================================

def test_round_trip_links_and_consumes(db, consultant, tg_client, fake_telegram):
    verification_service.issue(db, consultant.id, chat_id="555", code="ABCD1234")

    outcome = telegram_link_service.link_with_code(db, "ABCD1234", client=tg_client)

    assert outcome.ok is True
    assert outcome.confirmation_sent is True
    db.refresh(consultant)
    assert consultant.telegram_id == "555"
    assert verification_service.find(db, consultant.id) is None
    assert fake_telegram.sent_to("555") == [CONFIRMATION.format(name="Colin Consultant")]


def test_commit_rejects_chat_already_linked(db, consultant, make_user):
    make_user(Role.VIEWER, telegram_id="111")
    verification_service.issue(db, consultant.id, chat_id="111")
    verification = verification_service.find(db, consultant.id)

    # Skip the matcher to exercise the unique constraint directly
    outcome = telegram_link_service.commit(db, verification, "111")

    assert outcome.ok is False
    assert outcome.reason == MatchReason.IDENTITY_ALREADY_LINKED
    db.expire_all()
    assert consultant.telegram_id is None
    assert db.query(TelegramVerification).filter_by(user_id=consultant.id).count() == 1


def test_confirmation_failure_keeps_link(db, consultant, tg_client, fake_telegram):
    fake_telegram.fail = True
    verification_service.issue(db, consultant.id, chat_id="555", code="ABCD1234")

    outcome = telegram_link_service.link_with_code(db, "ABCD1234", client=tg_client)

    assert outcome.ok is True
    assert outcome.confirmation_sent is False
    db.refresh(consultant)
    assert consultant.telegram_id == "555"


def test_unexpected_confirmation_error_keeps_link(db, consultant):
    def explode(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("proxy exploded")

    client = TelegramClient(
        "999:SECRET", base_url="https://telegram.test", transport=httpx.MockTransport(explode)
    )
    verification_service.issue(db, consultant.id, chat_id="555", code="ABCD1234")

    outcome = telegram_link_service.link_with_code(db, "ABCD1234", client=client)

    assert outcome.ok is True
    assert outcome.confirmation_sent is False
    db.refresh(consultant)
    assert consultant.telegram_id == "555"


# =============================================================================
# In-app flows
# =============================================================================

def test_generate_code_for_linked_user_is_rejected(db, make_user):
    linked = make_user(Role.CONSULTANT, telegram_id="42")

    with pytest.raises(LinkError):
        telegram_link_service.generate_code(db, linked)


@pytest.mark.parametrize("raw,expected", [
    ("123456789", ("123456789", True)),
    ("@some_user", ("some_user", False)),
    ("  some_user  ", ("some_user", False)),
])
def test_parse_identifier(raw, expected):
    assert telegram_link_service.parse_identifier(raw) == expected


@pytest.mark.parametrize("raw", ["", "@", "abc", "bad name!"])
def test_parse_identifier_rejects(raw):
    with pytest.raises(LinkError):
        telegram_link_service.parse_identifier(raw)


def test_send_code_to_numeric_id(db, consultant, tg_client, fake_telegram):
    verification = telegram_link_service.send_code(db, consultant, "555", tg_client)

    assert verification.telegram_id == "555"
    [message] = fake_telegram.sent_to("555")
    assert verification.code in message


def test_send_code_resolves_username(db, consultant, tg_client, fake_telegram):
    fake_telegram.usernames["colin_c"] = 987654

    verification = telegram_link_service.send_code(db, consultant, "@colin_c", tg_client)

    assert verification.telegram_id == "987654"
    assert len(fake_telegram.sent_to("987654")) == 1


def test_send_code_chat_not_found(db, consultant, tg_client, fake_telegram):
    fake_telegram.unreachable.add("555")

    with pytest.raises(LinkError, match="start a conversation"):
        telegram_link_service.send_code(db, consultant, "555", tg_client, bot_name="clarity_mdt_bot")

    assert verification_service.find(db, consultant.id) is None


def test_send_code_to_chat_linked_elsewhere(db, consultant, make_user, tg_client, fake_telegram):
    make_user(Role.VIEWER, telegram_id="555")

    with pytest.raises(LinkError, match="already linked"):
        telegram_link_service.send_code(db, consultant, "555", tg_client)

    assert fake_telegram.sent == []


def test_verify_code_round_trip(db, consultant, tg_client, fake_telegram):
    verification = telegram_link_service.send_code(db, consultant, "555", tg_client)

    outcome = telegram_link_service.verify_code(db, consultant, verification.code.lower(), tg_client)

    assert outcome.ok is True
    assert consultant.telegram_id == "555"


def test_verify_code_expired(db, consultant):
    t0 = utcnow()
    verification_service.issue(db, consultant.id, chat_id="555", code="ABCD1234", now=t0)

    with pytest.raises(LinkError, match="expired"):
        telegram_link_service.verify_code(
            db, consultant, "ABCD1234", now=t0 + timedelta(minutes=11)
        )


def test_verify_code_without_chat(db, consultant):
    telegram_link_service.generate_code(db, consultant)
    code = verification_service.find(db, consultant.id).code

    with pytest.raises(LinkError, match="not sent to a Telegram chat"):
        telegram_link_service.verify_code(db, consultant, code)


def test_verify_code_rejects_blank(db, consultant):
    with pytest.raises(LinkError, match="required"):
        telegram_link_service.verify_code(db, consultant, "   ")


def test_unlink(db, make_user):
    linked = make_user(Role.CONSULTANT, telegram_id="42")

    assert telegram_link_service.unlink(db, linked) is True
    db.refresh(linked)
    assert linked.telegram_id is None
    assert telegram_link_service.unlink(db, linked) is False


# =============================================================================
# Bot inbound
# =============================================================================

@pytest.mark.parametrize("text,expected", [
    ("abcd1234", "ABCD1234"),
    ("/start ABCD1234", "ABCD1234"),
    ("  /START   abcd1234 ", "ABCD1234"),
    ("/start", None),
    ("hello", None),
    ("ABCD12345", None),
])
def test_extract_code(text, expected):
    assert telegram_link_service.extract_code(text) == expected


def test_bot_links_generated_code(db, consultant, tg_client, fake_telegram):
    verification = telegram_link_service.generate_code(db, consultant)

    reply = telegram_link_service.handle_incoming_text(db, "777", verification.code, client=tg_client)

    assert reply == CONFIRMATION.format(name="Colin Consultant")
    db.refresh(consultant)
    assert consultant.telegram_id == "777"
    assert fake_telegram.sent_to("777") == [reply]


def test_bot_accepts_start_deep_link(db, consultant, tg_client):
    verification = telegram_link_service.generate_code(db, consultant)

    telegram_link_service.handle_incoming_text(db, "777", f"/start {verification.code}", client=tg_client)

    db.refresh(consultant)
    assert consultant.telegram_id == "777"


def test_bot_replies_for_unknown_code(db, tg_client, fake_telegram):
    reply = telegram_link_service.handle_incoming_text(db, "777", "DEADBEEF", client=tg_client)

    assert reply == REPLY_INVALID_CODE
    assert fake_telegram.sent_to("777") == [REPLY_INVALID_CODE]


def test_bot_replies_for_expired_code(db, consultant):
    t0 = utcnow()
    verification_service.issue(db, consultant.id, code="ABCD1234", now=t0)

    reply = telegram_link_service.handle_incoming_text(
        db, "777", "ABCD1234", now=t0 + timedelta(minutes=11)
    )

    assert reply == REPLY_EXPIRED


def test_bot_rejects_chat_linked_to_someone_else(db, consultant, make_user):
    make_user(Role.VIEWER, telegram_id="777")
    verification = telegram_link_service.generate_code(db, consultant)

    reply = telegram_link_service.handle_incoming_text(db, "777", verification.code)

    assert reply == REPLY_ALREADY_LINKED
    db.refresh(consultant)
    assert consultant.telegram_id is None


def test_bot_help_and_prompt(db, tg_client, fake_telegram):
    help_reply = telegram_link_service.handle_incoming_text(db, "777", "/start", client=tg_client)
    prompt_reply = telegram_link_service.handle_incoming_text(db, "777", "hi there", client=tg_client)

    assert "valid for 10 minutes" in help_reply
    assert prompt_reply == REPLY_PROMPT
    assert len(fake_telegram.sent_to("777")) == 2
