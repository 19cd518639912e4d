from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.security import UserRole
from ..models.notification import NotificationCategory, NotificationPriority


class NotificationEvent(BaseModel):
    """A source event to be recorded and fanned out to one recipient."""

    recipient_id: int
    recipient_kind: UserRole
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.MEDIUM
    action_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    recipient_id: int
    recipient_kind: UserRole
    title: str
    message: str
    category: NotificationCategory
    priority: NotificationPriority
    is_read: bool
    read_at: Optional[datetime] = None
    action_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime
    expires_at: datetime


class Pagination(BaseModel):
    current: int
    pages: int
    total: int
    unread_count: int


class NotificationPage(BaseModel):
    notifications: List[NotificationResponse]
    pagination: Pagination


class CategoryStats(BaseModel):
    category: NotificationCategory
    count: int
    unread_count: int


class NotificationStats(BaseModel):
    stats: List[CategoryStats]
    total_notifications: int
    unread_notifications: int
    read_notifications: int


class MarkAllReadResponse(BaseModel):
    updated: int
