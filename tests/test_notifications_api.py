from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db import get_db
from app.main import app
from app.models import Notification, NotificationPreferences, NotificationType, User
from app.security import create_access_token
from db_support import make_session

BASE_TIME = datetime(2026, 4, 1, 9, 0, 0, tzinfo=timezone.utc)


def _override_get_db(session: Session):
    def _override() -> Generator[Session, None, None]:
        yield session

    return _override


def _auth(user_id: int, role: str = "employee") -> dict[str, str]:
    token, _expires_in, _claims = create_access_token(user_id=user_id, username=f"user{user_id}", role=role)
    return {"Authorization": f"Bearer {token}"}


class NotificationsApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.db.add_all(
            [
                User(id=1, username="admin", role="admin"),
                User(id=2, username="alice", role="employee"),
                User(id=3, username="bob", role="employee"),
                User(id=4, username="carol", role="manager"),
            ]
        )
        self.db.commit()
        app.dependency_overrides[get_db] = _override_get_db(self.db)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def _add(self, user_id: int, **overrides) -> Notification:  # type: ignore[no-untyped-def]
        values = {
            "user_id": user_id,
            "type": NotificationType.SYSTEM,
            "category": "announcements",
            "title": "Notice",
            "message": "Hello",
            "is_read": False,
            "created_at": BASE_TIME,
        }
        values.update(overrides)
        row = Notification(**values)
        self.db.add(row)
        self.db.commit()
        return row

    def _reload(self, notification_id: int) -> Notification | None:
        self.db.expire_all()
        return self.db.get(Notification, notification_id)

    def test_requires_bearer_token(self) -> None:
        response = self.client.get("/api/notifications")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")
        self.assertIn("X-Request-Id", response.headers)

    def test_list_returns_only_callers_rows_newest_first(self) -> None:
        older = self._add(2, title="older", created_at=BASE_TIME)
        newer = self._add(2, title="newer", created_at=BASE_TIME + timedelta(minutes=1))
        self._add(3, title="someone else")

        response = self.client.get("/api/notifications", headers=_auth(2))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual([item["id"] for item in body], [newer.id, older.id])
        self.assertEqual(body[0]["userId"], 2)
        self.assertIn("isRead", body[0])
        self.assertIn("batchId", body[0])

    def test_list_limit_is_capped_and_defaults_on_bad_values(self) -> None:
        for index in range(105):
            self.db.add(
                Notification(
                    user_id=2,
                    type=NotificationType.SYSTEM,
                    title=f"n{index}",
                    message="x",
                    created_at=BASE_TIME + timedelta(seconds=index),
                )
            )
        self.db.commit()

        capped = self.client.get("/api/notifications?limit=500", headers=_auth(2))
        fallback = self.client.get("/api/notifications?limit=0", headers=_auth(2))
        paged = self.client.get("/api/notifications?limit=10&offset=100", headers=_auth(2))
        garbled = self.client.get("/api/notifications?limit=abc&offset=xyz", headers=_auth(2))

        self.assertEqual(len(capped.json()), 100)
        self.assertEqual(len(fallback.json()), 50)
        self.assertEqual(len(paged.json()), 5)
        self.assertEqual(garbled.status_code, 200)
        self.assertEqual(len(garbled.json()), 50)
        self.assertEqual(garbled.json()[0]["title"], "n104")

    def test_list_unread_only_and_since_filters(self) -> None:
        self._add(2, title="read", is_read=True, created_at=BASE_TIME + timedelta(minutes=5))
        self._add(2, title="old-unread", created_at=BASE_TIME - timedelta(minutes=5))
        self._add(2, title="new-unread", created_at=BASE_TIME + timedelta(minutes=5))

        response = self.client.get(
            "/api/notifications",
            params={"unreadOnly": "true", "since": BASE_TIME.isoformat()},
            headers=_auth(2),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["title"] for item in response.json()], ["new-unread"])

    def test_mark_read_only_touches_callers_listed_rows(self) -> None:
        mine = self._add(2)
        mine_unlisted = self._add(2)
        theirs = self._add(3)

        response = self.client.post(
            "/api/notifications/mark-read",
            json={"notificationIds": [mine.id, theirs.id]},
            headers=_auth(2),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "Notifications marked as read"})
        reloaded = self._reload(mine.id)
        assert reloaded is not None
        self.assertTrue(reloaded.is_read)
        self.assertIsNotNone(reloaded.read_at)
        self.assertFalse(self._reload(mine_unlisted.id).is_read)  # type: ignore[union-attr]
        self.assertFalse(self._reload(theirs.id).is_read)  # type: ignore[union-attr]

    def test_mark_read_requires_id_list(self) -> None:
        missing = self.client.post("/api/notifications/mark-read", json={}, headers=_auth(2))
        wrong_type = self.client.post(
            "/api/notifications/mark-read",
            json={"notificationIds": "all"},
            headers=_auth(2),
        )

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(wrong_type.status_code, 400)

    def test_delete_is_scoped_to_owner(self) -> None:
        theirs_id = self._add(3).id
        mine_id = self._add(2).id

        blocked = self.client.delete(f"/api/notifications/{theirs_id}", headers=_auth(2))
        allowed = self.client.delete(f"/api/notifications/{mine_id}", headers=_auth(2))

        self.assertEqual(blocked.status_code, 200)
        self.assertEqual(allowed.json(), {"message": "Notification dismissed"})
        self.assertIsNotNone(self._reload(theirs_id))
        self.assertIsNone(self._reload(mine_id))

    def test_delete_with_malformed_id_is_400(self) -> None:
        response = self.client.delete("/api/notifications/not-a-number", headers=_auth(2))

        self.assertEqual(response.status_code, 400)

    def test_clear_all_removes_only_callers_rows(self) -> None:
        self._add(2)
        self._add(2)
        theirs = self._add(3)

        response = self.client.delete("/api/notifications/clear-all", headers=_auth(2))

        self.assertEqual(response.status_code, 200)
        self.db.expire_all()
        self.assertEqual(self.db.scalar(select(func.count(Notification.id))), 1)
        self.assertIsNotNone(self._reload(theirs.id))

    def test_snooze_with_minutes(self) -> None:
        row = self._add(2)

        response = self.client.post(f"/api/notifications/{row.id}/snooze", json={"minutes": 30}, headers=_auth(2))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Notification snoozed")
        self.assertIn("snoozedUntil", response.json())
        self.assertIsNotNone(self._reload(row.id).snoozed_until)  # type: ignore[union-attr]

    def test_snooze_requires_target(self) -> None:
        row = self._add(2)

        response = self.client.post(f"/api/notifications/{row.id}/snooze", json={}, headers=_auth(2))

        self.assertEqual(response.status_code, 400)

    def test_snooze_other_users_row_is_404(self) -> None:
        theirs = self._add(3)

        response = self.client.post(
            f"/api/notifications/{theirs.id}/snooze",
            json={"snoozeUntil": (BASE_TIME + timedelta(days=1)).isoformat()},
            headers=_auth(2),
        )

        self.assertEqual(response.status_code, 404)
        self.assertIsNone(self._reload(theirs.id).snoozed_until)  # type: ignore[union-attr]

    def test_batched_view_collapses_batches(self) -> None:
        self._add(
            2,
            type=NotificationType.TICKET,
            category="assignments",
            message="You have been assigned ticket TKT-1: A",
            batch_id="b-1",
        )
        self._add(
            2,
            type=NotificationType.TICKET,
            category="assignments",
            message="You have been assigned ticket TKT-2: B",
            batch_id="b-1",
            created_at=BASE_TIME + timedelta(minutes=1),
        )

        response = self.client.get("/api/notifications/batched?language=Arabic", headers=_auth(2))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body), 1)
        self.assertEqual(body[0]["id"], "batch_b-1")
        self.assertEqual(body[0]["count"], 2)
        self.assertTrue(body[0]["isBatch"])
        self.assertEqual(body[0]["title"], "تم تعيين 2 تذاكر لك")
        self.assertEqual(len(body[0]["notificationIds"]), 2)
        self.assertEqual(body[0]["userId"], 2)
        self.assertEqual(body[0]["createdAt"], body[0]["latestTimestamp"])
        self.assertTrue(body[0]["createdAt"].startswith("2026-"))


class AdminApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.db.add_all(
            [
                User(id=1, username="admin", role="admin"),
                User(id=2, username="alice", role="employee"),
                User(id=3, username="bob", role="employee"),
                User(id=4, username="carol", role="manager"),
            ]
        )
        self.db.commit()
        app.dependency_overrides[get_db] = _override_get_db(self.db)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def _count(self, user_id: int | None = None) -> int:
        self.db.expire_all()
        statement = select(func.count(Notification.id))
        if user_id is not None:
            statement = statement.where(Notification.user_id == user_id)
        return int(self.db.scalar(statement) or 0)

    def test_create_requires_admin(self) -> None:
        response = self.client.post(
            "/api/notifications",
            json={"userId": 2, "title": "Hi", "message": "There", "type": "System"},
            headers=_auth(2),
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_create_bypasses_preferences(self) -> None:
        self.db.add(NotificationPreferences(user_id=2, system_announcements=False, dnd_days=[]))
        self.db.commit()

        response = self.client.post(
            "/api/notifications",
            json={"userId": 2, "title": "Hi", "message": "There", "type": "System", "entityId": 9},
            headers=_auth(1, "admin"),
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["userId"], 2)
        self.assertEqual(body["entityId"], 9)
        self.assertFalse(body["isRead"])
        self.assertEqual(self._count(2), 1)

    def test_create_missing_fields_is_400(self) -> None:
        response = self.client.post(
            "/api/notifications",
            json={"userId": 2, "title": "Hi"},
            headers=_auth(1, "admin"),
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._count(), 0)

    def test_broadcast_to_everyone(self) -> None:
        response = self.client.post(
            "/api/notifications/broadcast",
            json={"title": "Outage", "message": "Email down", "targetRole": "all"},
            headers=_auth(1, "admin"),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"message": "Notification sent to all 4 users", "userCount": 4, "title": "Outage"},
        )
        self.assertEqual(self._count(), 4)

    def test_broadcast_to_role(self) -> None:
        response = self.client.post(
            "/api/notifications/broadcast",
            json={"title": "Policy", "message": "Read it", "targetRole": "employee"},
            headers=_auth(1, "admin"),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["targetRole"], "employee")
        self.assertEqual(self._count(2), 1)
        self.assertEqual(self._count(3), 1)
        self.assertEqual(self._count(4), 0)

    def test_broadcast_requires_title_and_message(self) -> None:
        response = self.client.post(
            "/api/notifications/broadcast",
            json={"title": "", "message": "x"},
            headers=_auth(1, "admin"),
        )

        self.assertEqual(response.status_code, 400)

    def test_cleanup_stats_and_run(self) -> None:
        self.db.add(
            Notification(
                user_id=2,
                type=NotificationType.SYSTEM,
                title="ancient",
                message="x",
                is_read=True,
                created_at=datetime.now(timezone.utc) - timedelta(days=400),
            )
        )
        self.db.commit()

        stats = self.client.get("/api/notifications/cleanup/stats", headers=_auth(1, "admin"))
        run = self.client.post("/api/notifications/cleanup/run", headers=_auth(1, "admin"))

        self.assertEqual(stats.status_code, 200)
        self.assertEqual(stats.json()["eligibleForCleanup"], 1)
        self.assertEqual(run.status_code, 200)
        self.assertEqual(run.json()["cleanup"]["deleted_count"], 1)
        self.assertEqual(self._count(), 0)

    def test_cleanup_requires_admin(self) -> None:
        response = self.client.get("/api/notifications/cleanup/stats", headers=_auth(2))

        self.assertEqual(response.status_code, 403)

    @patch("app.routers.notifications.list_all_user_ids", side_effect=RuntimeError("db down"))
    def test_unexpected_error_is_500_envelope(self, _mock_list_users) -> None:
        client = TestClient(app, raise_server_exceptions=False)

        response = client.post(
            "/api/notifications/broadcast",
            json={"title": "Outage", "message": "Email down"},
            headers=_auth(1, "admin"),
        )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"]["code"], "INTERNAL_ERROR")


class PreferencesApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.db.add(User(id=2, username="alice"))
        self.db.commit()
        app.dependency_overrides[get_db] = _override_get_db(self.db)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def _preference_rows(self) -> int:
        self.db.expire_all()
        return int(self.db.scalar(select(func.count(NotificationPreferences.id))) or 0)

    def test_get_twice_creates_one_row_with_defaults(self) -> None:
        first = self.client.get("/api/notifications/preferences", headers=_auth(2))
        second = self.client.get("/api/notifications/preferences", headers=_auth(2))

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["id"], second.json()["id"])
        self.assertTrue(first.json()["ticketAssignments"])
        self.assertTrue(first.json()["employeeChanges"])
        self.assertFalse(first.json()["dndEnabled"])
        self.assertEqual(self._preference_rows(), 1)

    def test_put_creates_then_updates_in_place(self) -> None:
        created = self.client.put(
            "/api/notifications/preferences",
            json={"ticketAssignments": False, "maintenanceAlerts": False},
            headers=_auth(2),
        )
        updated = self.client.put(
            "/api/notifications/preferences",
            json={
                "ticketAssignments": True,
                "maintenanceAlerts": False,
                "dndEnabled": True,
                "dndStartTime": "22:00",
                "dndEndTime": "07:00",
                "dndDays": [1, 2, 3],
            },
            headers=_auth(2),
        )

        self.assertEqual(created.status_code, 200)
        self.assertFalse(created.json()["ticketAssignments"])
        self.assertEqual(updated.json()["id"], created.json()["id"])
        self.assertTrue(updated.json()["ticketAssignments"])
        self.assertFalse(updated.json()["maintenanceAlerts"])
        self.assertEqual(updated.json()["dndDays"], [1, 2, 3])
        self.assertEqual(self._preference_rows(), 1)

    def test_put_rejects_bad_dnd_time(self) -> None:
        response = self.client.put(
            "/api/notifications/preferences",
            json={"dndStartTime": "25:00"},
            headers=_auth(2),
        )

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
