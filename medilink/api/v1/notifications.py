from fastapi import APIRouter, Depends, Query, status

from ...api.deps import get_admin, get_current_principal, get_services
from ...core.exceptions import UpstreamUnavailableError
from ...core.security import Principal
from ...schemas.notification import (
    MarkAllReadResponse, NotificationEvent, NotificationPage,
    NotificationResponse, NotificationStats
)
from ...services.container import ServiceContainer

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationPage)
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    """Newest first; expired notifications are never listed."""
    return services.dispatcher.list_for(principal, page=page, limit=limit, unread_only=unread_only)


@router.get("/stats", response_model=NotificationStats)
def notification_stats(
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    return services.dispatcher.stats_for(principal)


@router.patch("/read-all", response_model=MarkAllReadResponse)
def mark_all_read(
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    updated = services.dispatcher.mark_all_read(principal.id, principal.kind)
    return MarkAllReadResponse(updated=updated)


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: int,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    return services.dispatcher.mark_read(notification_id, principal)


@router.delete("/{notification_id}")
def delete_notification(
    notification_id: int,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    services.dispatcher.delete(notification_id, principal)
    return {"message": "Notification deleted successfully"}


@router.post("", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
def create_notification(
    event: NotificationEvent,
    admin: Principal = Depends(get_admin),
    services: ServiceContainer = Depends(get_services)
):
    """Send a system notification to one user (admin only)."""
    record = services.dispatcher.publish(event)
    if record is None:
        raise UpstreamUnavailableError("Notification could not be recorded")
    return record
