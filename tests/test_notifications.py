"""SMTP notifier: configuration gating, subjects, failure reporting."""

import pytest

from grievance_portal import notifications
from grievance_portal.notifications import Notifier, subject_tag

pytestmark = pytest.mark.asyncio

GRIEVANCE = {"tracking_id": "GR-0042", "subject": "Water cooler", "status": "pending",
             "admin_response": "Plumber assigned"}


@pytest.fixture
def smtp_outbox(monkeypatch):
    outbox = []

    async def fake_send(message, **kwargs):
        outbox.append((message, kwargs))

    monkeypatch.setattr(notifications.aiosmtplib, "send", fake_send)
    return outbox


@pytest.fixture
def configured():
    return Notifier(host="smtp.test", port=587, user="bot@gndec.ac.in", password="pw",
                    from_email="bot@gndec.ac.in", from_name="Grievance Portal")


class TestNotifier:

    async def test_unconfigured_reports_false(self, smtp_outbox):
        n = Notifier(host="", user="", password="")
        assert await n.send_otp("a@gndec.ac.in", "123456") is False
        assert smtp_outbox == []

    async def test_missing_recipient(self, configured, smtp_outbox):
        assert await configured.send_email("", "Hi", "<p>Hi</p>") is False
        assert smtp_outbox == []

    async def test_otp_contains_code(self, configured, smtp_outbox):
        assert await configured.send_otp("a@gndec.ac.in", "654321") is True
        message, kwargs = smtp_outbox[0]
        assert message["To"] == "a@gndec.ac.in"
        assert "654321" in message.as_string()
        assert kwargs["hostname"] == "smtp.test"

    async def test_verification_link(self, configured, smtp_outbox):
        await configured.send_verification_email("a@gndec.ac.in", "tok.en.value")
        assert "/api/auth/verify-email/tok.en.value" in smtp_outbox[0][0].as_string()

    async def test_status_update_subject_tagged(self, configured, smtp_outbox):
        await configured.send_status_update("a@gndec.ac.in", GRIEVANCE, "resolved")
        message = smtp_outbox[0][0]
        assert message["Subject"].startswith(subject_tag("GR-0042"))
        assert "resolved successfully" in message.as_string()

    async def test_reminder_subject_tagged(self, configured, smtp_outbox):
        await configured.send_reminder("a@gndec.ac.in", GRIEVANCE, "Please look again")
        assert "[GR-0042]" in smtp_outbox[0][0]["Subject"]

    async def test_smtp_error_reports_false(self, configured, monkeypatch):
        async def broken_send(message, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(notifications.aiosmtplib, "send", broken_send)
        assert await configured.send_status_update("a@gndec.ac.in", GRIEVANCE, "resolved") is False

    async def test_status_message_fallback(self):
        assert notifications.status_message("in-progress") == "assigned and is in progress"
        assert notifications.status_message("weird") == "updated"
