"""Live push channel.

Clients connect to ``/ws?token=<access token>``. Everything sent to a client
goes through its ``ConnectionHandle`` queue and a single sender task, so
pushes from request threads and from this loop never interleave on the
socket.
"""
from datetime import datetime, timezone
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool
from typing import Any, Dict, Optional
import asyncio
import json
import logging

from ...core.config import settings
from ...core.exceptions import MedilinkError
from ...core.security import Principal, UserRole, principal_from_token
from ...models.notification import NotificationCategory, NotificationPriority
from ...schemas.notification import NotificationEvent
from ...services.connection_registry import ConnectionHandle, appointment_room, run_sender
from ...services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

ROOM_MESSAGES = (
    "join_appointment", "leave_appointment", "send_message", "typing_start", "typing_stop",
    "request_video_call", "call_response",
)


def _error(handle: ConnectionHandle, message: str) -> None:
    handle.deliver({"type": "error", "message": message})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _set_doctor_presence(
    services: ServiceContainer, principal: Principal, online: bool, exclude: ConnectionHandle = None
) -> None:
    """Best-effort online flag plus a broadcast to everyone connected."""
    try:
        await run_in_threadpool(services.directory.set_online, principal.id, online)
    except MedilinkError as exc:
        logger.error(f"Could not flip doctor {principal.id} online={online}: {exc.detail}")
    services.registry.broadcast_all({
        "type": "doctor_online" if online else "doctor_offline",
        "doctor_id": principal.id,
    }, exclude=exclude)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    principal = principal_from_token(token)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    services: ServiceContainer = websocket.app.state.services
    registry = services.registry

    await websocket.accept()
    handle = ConnectionHandle(
        principal.id, principal.kind, asyncio.get_running_loop(),
        queue_size=settings.WS_SEND_QUEUE_SIZE,
    )
    sender = asyncio.create_task(run_sender(handle, websocket.send_json))
    first = registry.register(handle)
    closed = asyncio.ensure_future(handle.done.wait())

    try:
        unread = await run_in_threadpool(services.dispatcher.unread_count, principal.id, principal.kind)
        handle.deliver({
            "type": "connected",
            "connection_id": handle.id,
            "user_id": principal.id,
            "user_kind": principal.kind.value,
            "unread_count": unread,
        })
        if first and principal.kind == UserRole.DOCTOR:
            await _set_doctor_presence(services, principal, True, exclude=handle)

        while True:
            receive = asyncio.ensure_future(websocket.receive_text())
            finished, _ = await asyncio.wait({receive, closed}, return_when=asyncio.FIRST_COMPLETED)
            if receive not in finished:
                # Handle died under us (send failure or overflow)
                receive.cancel()
                sender.cancel()
                try:
                    await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
                except Exception as exc:
                    logger.warning(f"Closing dead connection {handle.id} failed: {exc}")
                break
            raw = receive.result()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                _error(handle, "Invalid JSON")
                continue
            if not isinstance(message, dict):
                _error(handle, "Messages must be JSON objects")
                continue
            await _handle_message(services, handle, principal, message)
    except WebSocketDisconnect:
        pass
    finally:
        handle.close("disconnected")
        sender.cancel()
        closed.cancel()
        last = registry.unregister(handle)
        if last and principal.kind == UserRole.DOCTOR:
            await _set_doctor_presence(services, principal, False)


async def _handle_message(
    services: ServiceContainer,
    handle: ConnectionHandle,
    principal: Principal,
    message: Dict[str, Any],
) -> None:
    registry = services.registry
    kind = message.get("type")
    appointment_id = message.get("appointment_id")

    if kind == "ping":
        handle.deliver({"type": "pong", "timestamp": _now()})
        return

    if kind not in ROOM_MESSAGES:
        _error(handle, f"Unknown message type '{kind}'")
        return
    if not isinstance(appointment_id, int):
        _error(handle, "appointment_id is required")
        return

    room = appointment_room(appointment_id)
    who = {"user_id": principal.id, "user_kind": principal.kind.value}

    if kind == "join_appointment":
        try:
            appointment = await run_in_threadpool(services.scheduler.get, appointment_id, principal)
        except MedilinkError as exc:
            _error(handle, exc.detail)
            return
        registry.join(handle, room)
        handle.deliver({
            "type": "joined_appointment",
            "appointment_id": appointment_id,
            "appointment": appointment.model_dump(mode="json"),
        })
        registry.broadcast_room(room, {"type": "user_joined", **who}, exclude=handle)

    elif kind == "leave_appointment":
        registry.leave(handle, room)
        registry.broadcast_room(room, {"type": "user_left", **who})

    elif kind == "typing_start" or kind == "typing_stop":
        registry.broadcast_room(room, {
            "type": "user_typing" if kind == "typing_start" else "user_stopped_typing",
            "appointment_id": appointment_id,
            **who,
        }, exclude=handle)

    elif not registry.is_member(handle, room):
        _error(handle, "Not in appointment room")

    elif kind == "request_video_call":
        call_type = message.get("call_type", "video")
        await _notify_counterpart(
            services, principal, appointment_id,
            title="Video Call Request",
            message=f"Your {principal.kind.value} is requesting a {call_type} call",
            priority=NotificationPriority.HIGH,
            page="call",
            extra={"call_type": call_type},
        )
        call = {
            "appointment_id": appointment_id,
            "caller_id": principal.id,
            "caller_kind": principal.kind.value,
            "call_type": call_type,
            "timestamp": _now(),
        }
        registry.broadcast_room(room, {"type": "incoming_video_call", **call}, exclude=handle)
        handle.deliver({"type": "call_request_sent", **call})

    elif kind == "call_response":
        registry.broadcast_room(room, {
            "type": "call_response",
            "appointment_id": appointment_id,
            "response": message.get("response"),
            "call_id": message.get("call_id"),
            "responder_id": principal.id,
            "responder_kind": principal.kind.value,
        }, exclude=handle)

    else:
        text = message.get("message")
        if not isinstance(text, str) or not text.strip():
            _error(handle, "message is required")
            return
        preview = text if len(text) <= 50 else text[:50] + "..."
        await _notify_counterpart(
            services, principal, appointment_id,
            title="New Message",
            message=f"New message from your {principal.kind.value}: {preview}",
            priority=NotificationPriority.MEDIUM,
            page="chat",
        )
        registry.broadcast_room(room, {
            "type": "new_message",
            "appointment_id": appointment_id,
            "sender_id": principal.id,
            "sender_kind": principal.kind.value,
            "message": text,
            "message_type": message.get("message_type", "text"),
            "timestamp": _now(),
        })


async def _notify_counterpart(
    services: ServiceContainer,
    sender: Principal,
    appointment_id: int,
    title: str,
    message: str,
    priority: NotificationPriority,
    page: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Record an event for the other participant; it is also pushed if they are live."""
    if sender.kind == UserRole.ADMIN:
        return
    try:
        appointment = await run_in_threadpool(services.scheduler.get, appointment_id, sender)
    except MedilinkError as exc:
        logger.warning(f"'{title}' notification skipped for appointment {appointment_id}: {exc.detail}")
        return

    if sender.kind == UserRole.PATIENT:
        recipient_id, recipient_kind = appointment.doctor_id, UserRole.DOCTOR
    else:
        recipient_id, recipient_kind = appointment.patient_id, UserRole.PATIENT

    await run_in_threadpool(services.dispatcher.publish, NotificationEvent(
        recipient_id=recipient_id,
        recipient_kind=recipient_kind,
        title=title,
        message=message,
        category=NotificationCategory.APPOINTMENT,
        priority=priority,
        action_url=f"/{recipient_kind.value}/appointments/{appointment_id}/{page}",
        metadata={"appointment_id": appointment_id, "sender_id": sender.id, **(extra or {})},
    ))
