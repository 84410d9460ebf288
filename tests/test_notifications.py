"""Tests for the notification inbox and e-mail rendering."""

import emailer
import notifications


class TestInbox:
    def test_unread_count_and_read(self, client, db, user, auth_headers):
        first = notifications.emit(db, str(user["_id"]), "order", "Order Placed", "Your order is in")
        notifications.emit(db, str(user["_id"]), "offer", "Sale", "Everything 20% off")

        assert client.get("/notifications/unread-count", headers=auth_headers).json() == {"count": 2}

        resp = client.put(f"/notifications/{first}/read", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["is_read"] is True
        assert client.get("/notifications/unread-count", headers=auth_headers).json() == {"count": 1}

        client.put("/notifications/read-all", headers=auth_headers)
        assert client.get("/notifications/unread-count", headers=auth_headers).json() == {"count": 0}

    def test_cannot_read_someone_elses(self, client, db, other_user, auth_headers):
        note = notifications.emit(db, str(other_user["_id"]), "order", "Hi", "Not yours")
        resp = client.put(f"/notifications/{note}/read", headers=auth_headers)
        assert resp.status_code == 404

    def test_admin_send(self, client, user, auth_headers, admin_headers):
        resp = client.post("/admin/send-notification",
                           json={"user_id": str(user["_id"]), "type": "offer", "title": "Diwali Sale",
                                 "message": "Flat 30% off"},
                           headers=admin_headers)
        assert resp.status_code == 201
        inbox = client.get("/notifications", headers=auth_headers).json()
        assert inbox[0]["title"] == "Diwali Sale"

    def test_admin_send_unknown_user(self, client, admin_headers):
        resp = client.post("/admin/send-notification",
                           json={"user_id": "6512bd43d9caa6e02c990b0a", "title": "Hi", "message": "There"},
                           headers=admin_headers)
        assert resp.status_code == 404

    def test_admin_broadcast_reaches_buyers_only(self, client, db, user, other_user, admin, auth_headers,
                                                admin_headers):
        resp = client.post("/admin/send-notification-all",
                           json={"type": "offer", "title": "Weekend Sale", "message": "Extra 10% off"},
                           headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json()["count"] == 2
        assert db["notification"].count_documents({"user_id": str(admin["_id"])}) == 0
        inbox = client.get("/notifications", headers=auth_headers).json()
        assert [n["title"] for n in inbox] == ["Weekend Sale"]

    def test_broadcast_is_admin_only(self, client, auth_headers):
        resp = client.post("/admin/send-notification-all", json={"title": "Hi", "message": "There"},
                           headers=auth_headers)
        assert resp.status_code == 403

    def test_emit_failure_is_contained(self, db, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(notifications, "create_document", broken)
        assert notifications.emit(db, "u1", "order", "Title", "Body") is None


class TestEmail:
    def test_render_cancellation_with_bank_prompt(self):
        subject, body = emailer.render("order_cancelled", "Asha", "SE123", requires_bank_details=True)
        assert "SE123" in subject
        assert "bank details" in body

    def test_render_confirmation(self):
        subject, body = emailer.render("order_confirmation", "Asha", "SE123", 499.5)
        assert "₹499.50" in body

    def test_send_without_credentials(self, monkeypatch):
        monkeypatch.setattr(emailer.config, "SMTP_USER", None)
        assert emailer.send("asha@shopeasy.in", "order_confirmation", "Asha", "SE1", 10.0) is False

    def test_send_failure_is_contained(self, monkeypatch):
        class BrokenSMTP:
            def __init__(self, *args, **kwargs):
                raise OSError("connection refused")

        monkeypatch.setattr(emailer.config, "SMTP_USER", "mailer")
        monkeypatch.setattr(emailer.config, "SMTP_PASSWORD", "pw")
        monkeypatch.setattr(emailer.smtplib, "SMTP", BrokenSMTP)
        assert emailer.send("asha@shopeasy.in", "refund_completed", "Asha", "SE1", 10.0) is False
