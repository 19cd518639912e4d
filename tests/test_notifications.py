from datetime import timedelta

import pytest

from medilink.core.exceptions import AuthorizationError, NotFoundError
from medilink.core.security import Principal, UserRole
from medilink.models.notification import NotificationCategory, NotificationPriority
from medilink.schemas.notification import NotificationEvent

PATIENT = Principal(id=101, kind=UserRole.PATIENT)
OTHER_PATIENT = Principal(id=102, kind=UserRole.PATIENT)
# Same numeric id as PATIENT but a different kind of user
DOCTOR_101 = Principal(id=101, kind=UserRole.DOCTOR)


def event(recipient=PATIENT, title="Reminder", category=NotificationCategory.REMINDER, **kwargs):
    return NotificationEvent(
        recipient_id=recipient.id,
        recipient_kind=recipient.kind,
        title=title,
        message=f"{title} message",
        category=category,
        **kwargs
    )


@pytest.fixture
def dispatcher(services):
    return services.dispatcher


class TestPublish:
    def test_publish_records_the_event(self, dispatcher, clock):
        record = dispatcher.publish(event(
            priority=NotificationPriority.HIGH, action_url="/patient/appointments/1",
            metadata={"appointment_id": 1},
        ))

        assert record.id is not None
        assert not record.is_read
        assert record.read_at is None
        assert record.priority == NotificationPriority.HIGH
        assert record.metadata == {"appointment_id": 1}
        assert record.created_at == clock()
        assert record.expires_at == clock() + timedelta(days=30)

    def test_publish_without_live_sessions_still_records(self, dispatcher):
        dispatcher.publish(event())
        assert dispatcher.unread_count(PATIENT.id, PATIENT.kind) == 1

    def test_record_failure_is_swallowed(self, dispatcher, monkeypatch):
        def broken(evt):
            raise RuntimeError("store down")

        monkeypatch.setattr(dispatcher, "_record", broken)

        assert dispatcher.publish(event()) is None

    def test_recipients_are_keyed_by_kind(self, dispatcher):
        dispatcher.publish(event(recipient=DOCTOR_101))

        assert dispatcher.unread_count(PATIENT.id, PATIENT.kind) == 0
        assert dispatcher.unread_count(DOCTOR_101.id, DOCTOR_101.kind) == 1


class TestReadTracking:
    def test_mark_read_is_idempotent(self, dispatcher, clock):
        record = dispatcher.publish(event())

        first = dispatcher.mark_read(record.id, PATIENT)
        clock.advance(timedelta(minutes=5))
        second = dispatcher.mark_read(record.id, PATIENT)

        assert first.is_read and second.is_read
        assert first.read_at == second.read_at
        assert dispatcher.unread_count(PATIENT.id, PATIENT.kind) == 0

    def test_mark_read_requires_recipient(self, dispatcher):
        record = dispatcher.publish(event())

        with pytest.raises(AuthorizationError):
            dispatcher.mark_read(record.id, OTHER_PATIENT)
        with pytest.raises(AuthorizationError):
            dispatcher.mark_read(record.id, DOCTOR_101)

    def test_mark_read_missing(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.mark_read(9999, PATIENT)

    def test_mark_all_read(self, dispatcher):
        for i in range(3):
            dispatcher.publish(event(title=f"Reminder {i}"))
        dispatcher.publish(event(recipient=OTHER_PATIENT))

        assert dispatcher.mark_all_read(PATIENT.id, PATIENT.kind) == 3
        assert dispatcher.mark_all_read(PATIENT.id, PATIENT.kind) == 0
        assert dispatcher.unread_count(OTHER_PATIENT.id, OTHER_PATIENT.kind) == 1


class TestExpiry:
    def test_expired_notifications_are_hidden(self, dispatcher, clock):
        record = dispatcher.publish(event())
        clock.advance(timedelta(days=31))

        page = dispatcher.list_for(PATIENT)

        assert page.notifications == []
        assert page.pagination.unread_count == 0
        with pytest.raises(NotFoundError):
            dispatcher.mark_read(record.id, PATIENT)
        assert dispatcher.mark_all_read(PATIENT.id, PATIENT.kind) == 0

    def test_purge_deletes_only_expired(self, dispatcher, clock):
        dispatcher.publish(event(title="Old"))
        clock.advance(timedelta(days=20))
        dispatcher.publish(event(title="New"))
        clock.advance(timedelta(days=11))

        assert dispatcher.purge_expired() == 1
        assert [n.title for n in dispatcher.list_for(PATIENT).notifications] == ["New"]
        assert dispatcher.purge_expired() == 0


class TestQueries:
    def test_pagination_newest_first(self, dispatcher, clock):
        for i in range(5):
            dispatcher.publish(event(title=f"Reminder {i}"))
            clock.advance(timedelta(minutes=1))

        first = dispatcher.list_for(PATIENT, page=1, limit=2)
        last = dispatcher.list_for(PATIENT, page=3, limit=2)

        assert [n.title for n in first.notifications] == ["Reminder 4", "Reminder 3"]
        assert [n.title for n in last.notifications] == ["Reminder 0"]
        assert first.pagination.pages == 3
        assert first.pagination.total == 5
        assert first.pagination.unread_count == 5

    def test_unread_only(self, dispatcher):
        record = dispatcher.publish(event(title="Seen"))
        dispatcher.publish(event(title="Unseen"))
        dispatcher.mark_read(record.id, PATIENT)

        page = dispatcher.list_for(PATIENT, unread_only=True)

        assert [n.title for n in page.notifications] == ["Unseen"]
        assert page.pagination.unread_count == 1

    def test_stats_by_category(self, dispatcher):
        record = dispatcher.publish(event(category=NotificationCategory.APPOINTMENT))
        dispatcher.publish(event(category=NotificationCategory.APPOINTMENT))
        dispatcher.publish(event(category=NotificationCategory.SYSTEM))
        dispatcher.mark_read(record.id, PATIENT)

        stats = dispatcher.stats_for(PATIENT)
        by_category = {s.category: (s.count, s.unread_count) for s in stats.stats}

        assert by_category == {
            NotificationCategory.APPOINTMENT: (2, 1),
            NotificationCategory.SYSTEM: (1, 1),
        }
        assert stats.total_notifications == 3
        assert stats.unread_notifications == 2
        assert stats.read_notifications == 1

    def test_delete(self, dispatcher):
        record = dispatcher.publish(event())

        with pytest.raises(AuthorizationError):
            dispatcher.delete(record.id, OTHER_PATIENT)

        dispatcher.delete(record.id, PATIENT)

        with pytest.raises(NotFoundError):
            dispatcher.delete(record.id, PATIENT)
