"""Process-local registry of live connections.

Each live connection is a ``ConnectionHandle`` owning a bounded queue that a
single sender task drains onto the transport. Pushes go through the registry
(user id -> handles, room -> handles) and only ever enqueue, so producers on
any thread never block on a slow or dead socket. Delivery to a handle that
has failed is dropped, never retried.
"""
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4
import asyncio
import logging
import threading

from ..core.security import UserRole

logger = logging.getLogger(__name__)

UserKey = Tuple[UserRole, int]


def appointment_room(appointment_id: int) -> str:
    return f"appointment_{appointment_id}"


class ConnectionHandle:
    def __init__(
        self,
        user_id: int,
        user_kind: UserRole,
        loop: asyncio.AbstractEventLoop,
        queue_size: int = 100,
    ):
        self.id = uuid4().hex
        self.user_id = user_id
        self.user_kind = UserRole(user_kind)
        self.rooms: Set[str] = set()
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self.done = asyncio.Event()

    @property
    def key(self) -> UserKey:
        return (self.user_kind, self.user_id)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, message: Dict[str, Any]) -> bool:
        """Enqueue a message from any thread. False when the handle is dead."""
        if self.closed:
            return False
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError:
            # Event loop already closed
            self.close("event loop closed")
            return False
        return True

    def _enqueue(self, message: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.close("send queue full")

    async def next_message(self) -> Dict[str, Any]:
        return await self._queue.get()

    def close(self, reason: str = "closed") -> None:
        """Mark the handle dead and signal its tasks to stop."""
        if self._closed.is_set():
            return
        self._closed.set()
        logger.warning(f"Connection {self.id} for {self.user_kind.value}:{self.user_id} closed: {reason}")
        try:
            self._loop.call_soon_threadsafe(self.done.set)
        except RuntimeError:
            pass

    def __repr__(self):
        return f"<ConnectionHandle(id={self.id}, user={self.user_kind.value}:{self.user_id})>"


async def run_sender(
    handle: ConnectionHandle,
    send: Callable[[Dict[str, Any]], Awaitable[None]],
) -> None:
    """Drain one handle onto its transport until cancelled or the send fails."""
    while not handle.closed:
        message = await handle.next_message()
        try:
            await send(message)
        except Exception as exc:
            handle.close(f"send failed: {exc}")
            return


class ConnectionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._by_user: Dict[UserKey, Set[ConnectionHandle]] = {}
        self._rooms: Dict[str, Set[ConnectionHandle]] = {}

    def register(self, handle: ConnectionHandle) -> bool:
        """Add a live handle; True when it is the user's first session."""
        with self._lock:
            sessions = self._by_user.setdefault(handle.key, set())
            first = not sessions
            sessions.add(handle)
        logger.info(f"Registered {handle!r} (first_session={first})")
        return first

    def unregister(self, handle: ConnectionHandle) -> bool:
        """Drop a handle and its room memberships; True when no session remains."""
        with self._lock:
            for room in list(handle.rooms):
                self._leave_locked(handle, room)
            sessions = self._by_user.get(handle.key)
            if sessions is not None:
                sessions.discard(handle)
                if not sessions:
                    del self._by_user[handle.key]
            last = handle.key not in self._by_user
        logger.info(f"Unregistered {handle!r} (last_session={last})")
        return last

    def join(self, handle: ConnectionHandle, room: str) -> None:
        with self._lock:
            self._rooms.setdefault(room, set()).add(handle)
            handle.rooms.add(room)

    def leave(self, handle: ConnectionHandle, room: str) -> None:
        with self._lock:
            self._leave_locked(handle, room)

    def _leave_locked(self, handle: ConnectionHandle, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(handle)
            if not members:
                del self._rooms[room]
        handle.rooms.discard(room)

    def is_member(self, handle: ConnectionHandle, room: str) -> bool:
        with self._lock:
            return handle in self._rooms.get(room, ())

    def sessions_for(self, user_kind: UserRole, user_id: int) -> List[ConnectionHandle]:
        with self._lock:
            return list(self._by_user.get((UserRole(user_kind), user_id), ()))

    def push_to_user(self, user_kind: UserRole, user_id: int, message: Dict[str, Any]) -> int:
        """Fan a message out to every live session of one user."""
        return self._deliver(self.sessions_for(user_kind, user_id), message)

    def broadcast_room(
        self, room: str, message: Dict[str, Any], exclude: Optional[ConnectionHandle] = None
    ) -> int:
        with self._lock:
            members = [h for h in self._rooms.get(room, ()) if h is not exclude]
        return self._deliver(members, message)

    def broadcast_all(self, message: Dict[str, Any], exclude: Optional[ConnectionHandle] = None) -> int:
        with self._lock:
            handles = [h for sessions in self._by_user.values() for h in sessions if h is not exclude]
        return self._deliver(handles, message)

    @staticmethod
    def _deliver(handles: Iterable[ConnectionHandle], message: Dict[str, Any]) -> int:
        delivered = 0
        for handle in handles:
            if handle.deliver(message):
                delivered += 1
            else:
                logger.warning(f"Dropped push to dead connection {handle!r}")
        return delivered

    def statistics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "users": len(self._by_user),
                "connections": sum(len(s) for s in self._by_user.values()),
                "rooms": len(self._rooms),
            }
