import asyncio
import threading

import pytest

from medilink.core.security import Principal, UserRole
from medilink.models.notification import NotificationCategory
from medilink.schemas.notification import NotificationEvent
from medilink.services.connection_registry import (
    ConnectionHandle, ConnectionRegistry, appointment_room, run_sender
)


def drain(loop, handle):
    """Run pending loop callbacks and collect what the handle has queued."""
    async def collect():
        await asyncio.sleep(0)
        messages = []
        while True:
            try:
                messages.append(await asyncio.wait_for(handle.next_message(), 0.05))
            except asyncio.TimeoutError:
                return messages
    return loop.run_until_complete(collect())


@pytest.fixture
def loop(event_loop_for_handles):
    return event_loop_for_handles


@pytest.fixture
def registry():
    return ConnectionRegistry()


def connect(registry, loop, user_id=1, kind=UserRole.PATIENT, queue_size=100):
    handle = ConnectionHandle(user_id, kind, loop, queue_size=queue_size)
    registry.register(handle)
    return handle


class TestRegistration:
    def test_first_and_last_session(self, registry, loop):
        first = ConnectionHandle(1, UserRole.DOCTOR, loop)
        second = ConnectionHandle(1, UserRole.DOCTOR, loop)

        assert registry.register(first) is True
        assert registry.register(second) is False
        assert set(registry.sessions_for(UserRole.DOCTOR, 1)) == {first, second}
        assert registry.unregister(first) is False
        assert registry.unregister(second) is True
        assert registry.sessions_for(UserRole.DOCTOR, 1) == []

    def test_unregister_drops_room_membership(self, registry, loop):
        handle = connect(registry, loop)
        registry.join(handle, appointment_room(5))

        registry.unregister(handle)

        assert registry.statistics() == {"users": 0, "connections": 0, "rooms": 0}

    def test_users_are_keyed_by_kind(self, registry, loop):
        doctor = connect(registry, loop, user_id=1, kind=UserRole.DOCTOR)

        assert registry.sessions_for(UserRole.DOCTOR, 1) == [doctor]
        assert registry.sessions_for(UserRole.PATIENT, 1) == []


class TestFanOut:
    def test_push_reaches_every_session(self, registry, loop):
        phone = connect(registry, loop)
        laptop = connect(registry, loop)
        stranger = connect(registry, loop, user_id=2)

        delivered = registry.push_to_user(UserRole.PATIENT, 1, {"type": "notification"})

        assert delivered == 2
        assert drain(loop, phone) == [{"type": "notification"}]
        assert drain(loop, laptop) == [{"type": "notification"}]
        assert drain(loop, stranger) == []

    def test_push_from_another_thread(self, registry, loop):
        handle = connect(registry, loop)

        worker = threading.Thread(
            target=registry.push_to_user, args=(UserRole.PATIENT, 1, {"type": "ping"})
        )
        worker.start()
        worker.join()

        assert drain(loop, handle) == [{"type": "ping"}]

    def test_room_broadcast_honours_exclude(self, registry, loop):
        room = appointment_room(9)
        doctor = connect(registry, loop, user_id=3, kind=UserRole.DOCTOR)
        patient = connect(registry, loop, user_id=1)
        outsider = connect(registry, loop, user_id=2)
        registry.join(doctor, room)
        registry.join(patient, room)

        registry.broadcast_room(room, {"type": "user_typing"}, exclude=patient)

        assert registry.is_member(doctor, room)
        assert not registry.is_member(outsider, room)
        assert drain(loop, doctor) == [{"type": "user_typing"}]
        assert drain(loop, patient) == []
        assert drain(loop, outsider) == []

    def test_leave_room(self, registry, loop):
        room = appointment_room(9)
        handle = connect(registry, loop)
        registry.join(handle, room)
        registry.leave(handle, room)

        assert registry.broadcast_room(room, {"type": "new_message"}) == 0
        assert handle.rooms == set()

    def test_broadcast_all(self, registry, loop):
        doctor = connect(registry, loop, user_id=3, kind=UserRole.DOCTOR)
        patient = connect(registry, loop, user_id=1)

        assert registry.broadcast_all({"type": "doctor_online"}, exclude=doctor) == 1
        assert drain(loop, patient) == [{"type": "doctor_online"}]
        assert drain(loop, doctor) == []


class TestDeadHandles:
    def test_overflow_closes_handle_and_stops_delivery(self, registry, loop):
        slow = connect(registry, loop, queue_size=1)
        healthy = connect(registry, loop)

        registry.push_to_user(UserRole.PATIENT, 1, {"seq": 1})
        registry.push_to_user(UserRole.PATIENT, 1, {"seq": 2})
        drain(loop, healthy)

        assert slow.closed
        assert not healthy.closed
        assert registry.push_to_user(UserRole.PATIENT, 1, {"seq": 3}) == 1
        assert drain(loop, healthy) == [{"seq": 3}]

    def test_close_signals_done(self, registry, loop):
        handle = connect(registry, loop)

        handle.close("send queue full")
        loop.run_until_complete(asyncio.wait_for(handle.done.wait(), 1))

        assert handle.done.is_set()

    def test_failed_send_closes_handle(self, registry, loop):
        handle = connect(registry, loop)
        attempts = []

        async def broken_send(message):
            attempts.append(message)
            raise ConnectionResetError("peer went away")

        handle.deliver({"seq": 1})
        loop.run_until_complete(asyncio.wait_for(run_sender(handle, broken_send), 1))

        assert handle.closed
        assert attempts == [{"seq": 1}]
        assert handle.deliver({"seq": 2}) is False

    def test_sender_forwards_in_order(self, registry, loop):
        handle = connect(registry, loop)
        sent = []

        async def send(message):
            sent.append(message)
            if len(sent) == 3:
                handle.close("done")

        for seq in range(3):
            handle.deliver({"seq": seq})
        loop.run_until_complete(asyncio.wait_for(run_sender(handle, send), 1))

        assert sent == [{"seq": 0}, {"seq": 1}, {"seq": 2}]

    def test_closed_loop_marks_handle_dead(self):
        loop = asyncio.new_event_loop()
        handle = ConnectionHandle(1, UserRole.PATIENT, loop)
        loop.close()

        assert handle.deliver({"seq": 1}) is False
        assert handle.closed


class TestNotificationOrdering:
    def test_pushes_follow_publish_order(self, services, loop):
        registry = services.registry
        handle = connect(registry, loop, user_id=101)
        recipient = Principal(id=101, kind=UserRole.PATIENT)

        for i in range(3):
            services.dispatcher.publish(NotificationEvent(
                recipient_id=recipient.id,
                recipient_kind=recipient.kind,
                title=f"Update {i}",
                message="status changed",
                category=NotificationCategory.APPOINTMENT,
            ))

        pushed = drain(loop, handle)

        assert [m["type"] for m in pushed] == ["notification"] * 3
        assert [m["notification"]["title"] for m in pushed] == ["Update 0", "Update 1", "Update 2"]
        # Every pushed event is already durable
        stored = services.dispatcher.list_for(recipient).pagination.total
        assert stored == 3
