"""
Lifecycle engine tests: tracking IDs, submission, access rules, status
changes and reminders. Calls the engine directly with explicit actors.
"""

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from grievance_portal import grievances
from grievance_portal.grievances import TrackingIdExhausted, TRACK_FORBIDDEN_DETAIL

pytestmark = pytest.mark.asyncio

FORM = {
    "category": "hostel",
    "subject": "Water cooler broken",
    "description": "The water cooler on the second floor of Hostel 3 has not worked for a week.",
}


async def _file(db, actor, **overrides):
    return await grievances.submit(db, actor, {**FORM, **overrides})


# ═══════════════════════════════════════════════════════════════════════════
# Tracking IDs
# ═══════════════════════════════════════════════════════════════════════════

class TestTrackingIds:

    async def test_format(self):
        for _ in range(50):
            assert grievances.TRACKING_ID_RE.match(grievances.random_tracking_id())

    async def test_skips_ids_in_use(self, mongo_db, monkeypatch):
        mongo_db.grievances.insert_one({"_id": "x", "tracking_id": "GR-0001"})
        candidates = iter(["GR-0001", "GR-0001", "GR-0002"])
        monkeypatch.setattr(grievances, "random_tracking_id", lambda: next(candidates))
        assert grievances.generate_tracking_id(mongo_db) == "GR-0002"

    async def test_exhaustion_raises(self, mongo_db, monkeypatch):
        mongo_db.grievances.insert_one({"_id": "x", "tracking_id": "GR-0001"})
        monkeypatch.setattr(grievances, "random_tracking_id", lambda: "GR-0001")
        with pytest.raises(TrackingIdExhausted) as exc:
            grievances.generate_tracking_id(mongo_db, max_attempts=5)
        assert exc.value.status_code == 503

    async def test_insert_retries_on_duplicate_key(self, mongo_db, monkeypatch):
        # simulate a concurrent writer taking the ID between check and insert
        mongo_db.grievances.insert_one({"_id": "x", "tracking_id": "GR-0007"})
        candidates = iter(["GR-0007", "GR-0008"])
        monkeypatch.setattr(grievances, "generate_tracking_id", lambda db, attempts: next(candidates))
        doc = grievances.insert_with_tracking_id(mongo_db, {"_id": "y"})
        assert doc["tracking_id"] == "GR-0008"
        assert mongo_db.grievances.count_documents({"tracking_id": "GR-0008"}) == 1

    async def test_submissions_get_distinct_ids(self, mongo_db, users):
        docs = [await _file(mongo_db, users["student1"]) for _ in range(20)]
        ids = {d["tracking_id"] for d in docs}
        assert len(ids) == 20


# ═══════════════════════════════════════════════════════════════════════════
# Submission
# ═══════════════════════════════════════════════════════════════════════════

class TestSubmit:

    async def test_creates_pending_grievance(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        stored = mongo_db.grievances.find_one({"_id": doc["_id"]})
        assert stored["status"] == "pending"
        assert stored["user_id"] == users["student1"]["_id"]
        assert stored["title"] == FORM["subject"]
        assert stored["admin_response"] == ""
        assert stored["comments"] == []
        assert stored["last_reminder_sent"] is None
        # student details are snapshotted from the profile
        assert stored["university_roll_number"] == "2104512"
        assert stored["branch"] == "CSE"

    async def test_type_is_accepted_for_category(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"], category=None, type="Academic")
        assert doc["category"] == "academic"

    async def test_missing_fields_listed(self, mongo_db, users):
        with pytest.raises(HTTPException) as exc:
            await grievances.submit(mongo_db, users["student1"], {"category": "hostel"})
        assert exc.value.status_code == 400
        assert exc.value.detail == "Missing required fields: subject, description"
        assert mongo_db.grievances.count_documents({}) == 0

    async def test_invalid_category(self, mongo_db, users):
        with pytest.raises(HTTPException) as exc:
            await _file(mongo_db, users["student1"], category="canteen")
        assert exc.value.status_code == 400

    async def test_invalid_mobile(self, mongo_db, users):
        with pytest.raises(HTTPException) as exc:
            await _file(mongo_db, users["student1"], mobile_number="12ab")
        assert exc.value.status_code == 400

    async def test_requires_actor(self, mongo_db):
        with pytest.raises(HTTPException) as exc:
            await grievances.submit(mongo_db, None, dict(FORM))
        assert exc.value.status_code == 401

    async def test_unverified_actor_forbidden(self, mongo_db, users):
        actor = {**users["student1"], "is_email_verified": False}
        with pytest.raises(HTTPException) as exc:
            await grievances.submit(mongo_db, actor, dict(FORM))
        assert exc.value.status_code == 403

    async def test_failed_insert_removes_stored_files(self, mongo_db, users, upload_dir, monkeypatch):
        def exhausted(db, doc):
            raise TrackingIdExhausted(1)
        monkeypatch.setattr(grievances, "insert_with_tracking_id", exhausted)
        photo = SimpleNamespace(filename="leak.png", content_type="image/png")
        with pytest.raises(TrackingIdExhausted):
            await grievances.submit(mongo_db, users["student1"], dict(FORM), [(photo, b"\x89PNG")])
        assert list(upload_dir.iterdir()) == []
        assert mongo_db.grievances.count_documents({}) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Tracking & listing
# ═══════════════════════════════════════════════════════════════════════════

class TestTrackAndList:

    async def test_owner_and_staff_can_track(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        for key in ("student1", "staff", "admin"):
            g = await grievances.track(mongo_db, users[key], doc["tracking_id"])
            assert g["_id"] == doc["_id"]

    async def test_other_student_forbidden_not_missing(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.track(mongo_db, users["student2"], doc["tracking_id"])
        assert exc.value.status_code == 403
        assert exc.value.detail == TRACK_FORBIDDEN_DETAIL

    async def test_unknown_id_is_404(self, mongo_db, users):
        with pytest.raises(HTTPException) as exc:
            await grievances.track(mongo_db, users["student1"], "GR-9999")
        assert exc.value.status_code == 404

    async def test_malformed_id_is_400(self, mongo_db, users):
        with pytest.raises(HTTPException) as exc:
            await grievances.track(mongo_db, users["student1"], "GR-12")
        assert exc.value.status_code == 400

    async def test_tracking_id_case_insensitive(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        g = await grievances.track(mongo_db, users["student1"], doc["tracking_id"].lower())
        assert g["_id"] == doc["_id"]

    async def test_list_mine_only_returns_own(self, mongo_db, users):
        await _file(mongo_db, users["student1"])
        await _file(mongo_db, users["student2"])
        mine = await grievances.list_mine(mongo_db, users["student1"])
        assert len(mine) == 1
        assert mine[0]["user_id"] == users["student1"]["_id"]

    async def test_list_pending_excludes_closed(self, mongo_db, users):
        open_one = await _file(mongo_db, users["student1"])
        closed = await _file(mongo_db, users["student1"], subject="Fan not working")
        await grievances.update_status(mongo_db, users["admin"], closed["_id"], "resolved")
        pending = await grievances.list_pending_mine(mongo_db, users["student1"])
        assert [g["_id"] for g in pending] == [open_one["_id"]]

    async def test_list_all_staff_only(self, mongo_db, users):
        await _file(mongo_db, users["student1"])
        await _file(mongo_db, users["student2"])
        assert len(await grievances.list_all(mongo_db, users["staff"])) == 2
        with pytest.raises(HTTPException) as exc:
            await grievances.list_all(mongo_db, users["student1"])
        assert exc.value.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
# Status changes
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateStatus:

    async def test_staff_sets_status_and_response(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        g, changed = await grievances.update_status(
            mongo_db, users["staff"], doc["_id"], "in-progress", "Plumber assigned")
        assert changed is True
        stored = mongo_db.grievances.find_one({"_id": doc["_id"]})
        assert stored["status"] == "in-progress"
        assert stored["admin_response"] == "Plumber assigned"

    async def test_student_forbidden(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.update_status(mongo_db, users["student1"], doc["_id"], "resolved")
        assert exc.value.status_code == 403
        assert mongo_db.grievances.find_one({"_id": doc["_id"]})["status"] == "pending"

    async def test_invalid_status(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.update_status(mongo_db, users["admin"], doc["_id"], "closed")
        assert exc.value.status_code == 400

    async def test_unknown_grievance(self, mongo_db, users):
        with pytest.raises(HTTPException) as exc:
            await grievances.update_status(mongo_db, users["admin"], "missing", "resolved")
        assert exc.value.status_code == 404

    async def test_repeat_update_is_noop(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        await grievances.update_status(mongo_db, users["admin"], doc["_id"], "resolved", "Fixed")
        before = mongo_db.grievances.find_one({"_id": doc["_id"]})
        g, changed = await grievances.update_status(
            mongo_db, users["admin"], doc["_id"], "resolved", "Fixed")
        assert changed is False
        after = mongo_db.grievances.find_one({"_id": doc["_id"]})
        assert after["updated_at"] == before["updated_at"]

    async def test_any_transition_allowed(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        for status in ("resolved", "pending", "rejected", "in-progress"):
            g, changed = await grievances.update_status(mongo_db, users["admin"], doc["_id"], status)
            assert changed and g["status"] == status

    async def test_notify_status_change_stamps_last_email_sent(self, mongo_db, notifier, users):
        doc = await _file(mongo_db, users["student1"])
        sent = await grievances.notify_status_change(mongo_db, notifier, doc["_id"], "resolved")
        assert sent is True
        assert notifier.of_kind("status_update")[0]["to"] == users["student1"]["email"]
        assert mongo_db.grievances.find_one({"_id": doc["_id"]})["last_email_sent"] is not None

    async def test_notify_failure_leaves_record_alone(self, mongo_db, notifier, users):
        doc = await _file(mongo_db, users["student1"])
        notifier.deliver = False
        assert await grievances.notify_status_change(mongo_db, notifier, doc["_id"], "resolved") is False
        assert mongo_db.grievances.find_one({"_id": doc["_id"]})["last_email_sent"] is None


# ═══════════════════════════════════════════════════════════════════════════
# Comments
# ═══════════════════════════════════════════════════════════════════════════

class TestComments:

    async def test_owner_and_staff_comment(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        await grievances.add_comment(mongo_db, users["student1"], doc["_id"], "Any update?")
        await grievances.add_comment(mongo_db, users["staff"], doc["_id"], "Looking into it")
        comments = mongo_db.grievances.find_one({"_id": doc["_id"]})["comments"]
        assert [c["text"] for c in comments] == ["Any update?", "Looking into it"]
        assert all(c["is_email_reply"] is False for c in comments)

    async def test_other_student_forbidden(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.add_comment(mongo_db, users["student2"], doc["_id"], "hi")
        assert exc.value.status_code == 403

    async def test_blank_text_rejected(self, mongo_db, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.add_comment(mongo_db, users["student1"], doc["_id"], "   ")
        assert exc.value.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# Reminders
# ═══════════════════════════════════════════════════════════════════════════

class TestReminders:

    async def test_reminder_on_open_grievance(self, mongo_db, notifier, users):
        doc = await _file(mongo_db, users["student1"])
        result = await grievances.send_reminder(
            mongo_db, notifier, users["student1"], doc["tracking_id"], "Still broken")
        assert result["email_sent"] is True
        stored = mongo_db.grievances.find_one({"_id": doc["_id"]})
        assert stored["last_reminder_sent"] is not None
        assert stored["last_email_sent"] is not None
        # the reminder text is mailed, not stored
        assert stored["comments"] == []
        reminders = notifier.of_kind("reminder")
        assert reminders[0]["to"] == users["student1"]["email"]
        assert reminders[0]["message"] == "Still broken"

    async def test_reminder_copies_admin_inbox(self, mongo_db, notifier, users, monkeypatch):
        monkeypatch.setattr(grievances, "ADMIN_NOTIFICATION_EMAIL", "cell@example.edu")
        doc = await _file(mongo_db, users["student1"])
        await grievances.send_reminder(mongo_db, notifier, users["student1"], doc["tracking_id"], "Ping")
        assert {m["to"] for m in notifier.of_kind("reminder")} == {
            users["student1"]["email"], "cell@example.edu"}

    @pytest.mark.parametrize("status", ["resolved", "rejected"])
    async def test_closed_grievance_rejected(self, mongo_db, notifier, users, status):
        doc = await _file(mongo_db, users["student1"])
        await grievances.update_status(mongo_db, users["admin"], doc["_id"], status)
        with pytest.raises(HTTPException) as exc:
            await grievances.send_reminder(
                mongo_db, notifier, users["student1"], doc["tracking_id"], "Hello?")
        assert exc.value.status_code == 400
        assert status in exc.value.detail
        assert mongo_db.grievances.find_one({"_id": doc["_id"]})["last_reminder_sent"] is None
        assert notifier.of_kind("reminder") == []

    async def test_empty_message_rejected(self, mongo_db, notifier, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.send_reminder(mongo_db, notifier, users["student1"], doc["tracking_id"], " ")
        assert exc.value.status_code == 400

    async def test_other_student_forbidden(self, mongo_db, notifier, users):
        doc = await _file(mongo_db, users["student1"])
        with pytest.raises(HTTPException) as exc:
            await grievances.send_reminder(mongo_db, notifier, users["student2"], doc["tracking_id"], "x")
        assert exc.value.status_code == 403

    async def test_undelivered_reminder_still_stamped(self, mongo_db, notifier, users):
        doc = await _file(mongo_db, users["student1"])
        notifier.deliver = False
        result = await grievances.send_reminder(
            mongo_db, notifier, users["student1"], doc["tracking_id"], "Ping")
        assert result["email_sent"] is False
        stored = mongo_db.grievances.find_one({"_id": doc["_id"]})
        assert stored["last_reminder_sent"] is not None
        assert stored["last_email_sent"] is None
