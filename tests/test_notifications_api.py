"""Tests for /notifications endpoints."""
import uuid

import pytest

from clarity_mdt.db.enums import NotificationType, Role
from clarity_mdt.services import notification_service
from clarity_mdt.services.notification_service import NotificationContent


def _seed(db, user_id, title="Hello"):
    content = NotificationContent(type=NotificationType.MANUAL_NOTIFICATION, title=title, message="Body")
    return notification_service.notify_many(db, [user_id], content).notifications[0]


@pytest.mark.asyncio
async def test_list_and_count(client_for, consultant, db):
    _seed(db, consultant.id, "First")
    _seed(db, consultant.id, "Second")

    async with client_for(consultant) as c:
        listed = await c.get("/notifications")
        count = await c.get("/notifications/count")

    assert listed.status_code == 200
    data = listed.json()
    assert data["unread_count"] == 2
    assert {n["title"] for n in data["notifications"]} == {"First", "Second"}
    assert count.json() == {"count": 2}


@pytest.mark.asyncio
async def test_mark_read_and_unread(client_for, consultant, db):
    notification = _seed(db, consultant.id)

    async with client_for(consultant) as c:
        read = await c.patch(f"/notifications/{notification.id}", json={"read": True})
        assert read.json()["read"] is True
        assert read.json()["read_at"] is not None

        unread = await c.patch(f"/notifications/{notification.id}", json={"read": False})
        assert unread.json()["read_at"] is None


@pytest.mark.asyncio
async def test_cannot_touch_someone_elses_notification(client_for, consultant, viewer, db):
    theirs = _seed(db, viewer.id)

    async with client_for(consultant) as c:
        patched = await c.patch(f"/notifications/{theirs.id}", json={"read": True})
        deleted = await c.delete(f"/notifications/{theirs.id}")
        missing = await c.delete(f"/notifications/{uuid.uuid4()}")

    assert patched.status_code == 403
    assert deleted.status_code == 403
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_bulk_delete_is_all_or_nothing(client_for, consultant, viewer, db):
    mine = _seed(db, consultant.id)
    theirs = _seed(db, viewer.id)

    async with client_for(consultant) as c:
        rejected = await c.post(
            "/notifications/bulk-delete",
            json={"notification_ids": [str(mine.id), str(theirs.id)]},
        )
        assert rejected.status_code == 403

        accepted = await c.post("/notifications/bulk-delete", json={"notification_ids": [str(mine.id)]})
        assert accepted.json()["deleted_count"] == 1


@pytest.mark.asyncio
async def test_delete_all_own(client_for, consultant, viewer, db):
    _seed(db, consultant.id)
    _seed(db, consultant.id)
    _seed(db, viewer.id)

    async with client_for(consultant) as c:
        response = await c.delete("/notifications/bulk-delete")

    assert response.json()["deleted_count"] == 2
    assert notification_service.get_unread_count(db, viewer.id) == 1


@pytest.mark.asyncio
async def test_send_manual_to_department(client_for, coordinator, make_user, department, fake_telegram):
    make_user(Role.CONSULTANT, telegram_id="555")
    make_user(Role.VIEWER, department_id=None)

    async with client_for(coordinator) as c:
        response = await c.post("/notifications/send-manual", json={
            "title": "Reminder",
            "message": "Submit cases by Friday",
            "recipient_type": "department",
            "department_id": str(department.id),
        })

    assert response.status_code == 200
    assert response.json() == {
        "message": "Notification sent to 2 recipient(s)",
        "recipient_count": 2,
        "telegram_attempted": 1,
        "telegram_delivered": 1,
    }
    assert fake_telegram.sent_to("555") == ["Reminder\nSubmit cases by Friday"]


@pytest.mark.asyncio
async def test_send_manual_errors(client_for, coordinator, consultant):
    async with client_for(coordinator) as c:
        unknown = await c.post("/notifications/send-manual", json={
            "title": "T", "message": "M", "recipient_type": "individual", "user_id": str(uuid.uuid4()),
        })
        missing = await c.post("/notifications/send-manual", json={
            "title": "T", "message": "M", "recipient_type": "individual",
        })

    assert unknown.status_code == 404
    assert missing.status_code == 400

    async with client_for(consultant) as c:
        forbidden = await c.post("/notifications/send-manual", json={
            "title": "T", "message": "M", "recipient_type": "everyone",
        })
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "Only coordinators can send manual notifications"


@pytest.mark.asyncio
async def test_request_meeting(client_for, consultant, coordinator):
    async with client_for(consultant) as c:
        response = await c.post("/notifications/request-meeting", json={"remarks": "Urgent"})

    assert response.status_code == 200
    assert response.json()["recipient_count"] == 1


@pytest.mark.asyncio
async def test_request_meeting_without_coordinators(client_for, consultant):
    async with client_for(consultant) as c:
        response = await c.post("/notifications/request-meeting", json={})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_recipient_users_for_coordinators(client_for, coordinator, consultant):
    async with client_for(coordinator) as c:
        response = await c.get("/notifications/users")

    assert response.status_code == 200
    names = {u["name"] for u in response.json()}
    assert {"Cora Coordinator", "Colin Consultant"} <= names
