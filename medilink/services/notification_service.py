"""Notification recording and fan-out.

``publish`` always records the event first and only then pushes it to the
recipient's live sessions, so a missed push is recovered by polling. The
push half is best-effort: failures are logged, never raised to the caller.
"""
from datetime import datetime, timedelta
from sqlalchemy import case, func
from sqlalchemy.orm import Session, sessionmaker
from typing import Callable, Optional
import logging
import math

from ..core.database import store_errors
from ..core.exceptions import AuthorizationError, NotFoundError
from ..core.locks import KeyedLock
from ..core.security import Principal, UserRole
from ..models.notification import Notification
from ..schemas.notification import (
    CategoryStats, NotificationEvent, NotificationPage, NotificationResponse,
    NotificationStats, Pagination
)
from .connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        registry: ConnectionRegistry,
        ttl: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self.ttl = ttl
        self._clock = clock
        # Serializes record+push per recipient so pushes follow publish order
        self._order = KeyedLock()

    # Publishing

    def publish(self, event: NotificationEvent) -> Optional[NotificationResponse]:
        """Record an event and push it to the recipient's live sessions.

        Never raises: returns None when the event could not be recorded.
        """
        key = (UserRole(event.recipient_kind), event.recipient_id)
        with self._order.hold(key):
            try:
                record = self._record(event)
            except Exception:
                logger.exception(
                    f"Failed to record notification '{event.title}' for "
                    f"{key[0].value}:{event.recipient_id}"
                )
                return None

            try:
                delivered = self.registry.push_to_user(
                    record.recipient_kind, record.recipient_id,
                    {"type": "notification", "notification": record.model_dump(mode="json")},
                )
                logger.info(f"Notification {record.id} recorded, pushed to {delivered} session(s)")
            except Exception:
                logger.exception(f"Live push of notification {record.id} failed")

        return record

    def _record(self, event: NotificationEvent) -> NotificationResponse:
        now = self._clock()
        with store_errors("record_notification"), self._session_factory() as db:
            notification = Notification(
                recipient_id=event.recipient_id,
                recipient_kind=event.recipient_kind,
                title=event.title,
                message=event.message,
                category=event.category,
                priority=event.priority,
                action_url=event.action_url,
                meta=event.metadata,
                is_read=False,
                created_at=now,
                expires_at=now + self.ttl,
            )
            db.add(notification)
            db.commit()
            db.refresh(notification)
            return NotificationResponse.model_validate(notification)

    # Read tracking

    def mark_read(self, notification_id: int, requested_by: Principal) -> NotificationResponse:
        """Idempotent: later calls keep the first read timestamp."""
        with store_errors("mark_read"), self._session_factory() as db:
            notification = self._owned(db, notification_id, requested_by)
            if not notification.is_read:
                db.query(Notification).filter(
                    Notification.id == notification_id,
                    Notification.is_read.is_(False),
                ).update(
                    {Notification.is_read: True, Notification.read_at: self._clock()},
                    synchronize_session=False,
                )
                db.commit()
                db.refresh(notification)
            return NotificationResponse.model_validate(notification)

    def mark_all_read(self, user_id: int, user_kind: UserRole) -> int:
        with store_errors("mark_all_read"), self._session_factory() as db:
            now = self._clock()
            updated = db.query(Notification).filter(
                Notification.recipient_id == user_id,
                Notification.recipient_kind == UserRole(user_kind),
                Notification.is_read.is_(False),
                Notification.expires_at > now,
            ).update(
                {Notification.is_read: True, Notification.read_at: now},
                synchronize_session=False,
            )
            db.commit()
        logger.info(f"Marked {updated} notification(s) read for {UserRole(user_kind).value}:{user_id}")
        return updated

    # Queries

    def _live(self, db: Session, user_id: int, user_kind: UserRole):
        return db.query(Notification).filter(
            Notification.recipient_id == user_id,
            Notification.recipient_kind == UserRole(user_kind),
            Notification.expires_at > self._clock(),
        )

    def list_for(
        self, principal: Principal, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> NotificationPage:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        with store_errors("list_notifications"), self._session_factory() as db:
            query = self._live(db, principal.id, principal.kind)
            if unread_only:
                query = query.filter(Notification.is_read.is_(False))

            total = query.count()
            items = (
                query.order_by(Notification.created_at.desc(), Notification.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            unread = self._live(db, principal.id, principal.kind).filter(
                Notification.is_read.is_(False)
            ).count()

            return NotificationPage(
                notifications=[NotificationResponse.model_validate(n) for n in items],
                pagination=Pagination(
                    current=page,
                    pages=math.ceil(total / limit),
                    total=total,
                    unread_count=unread,
                ),
            )

    def unread_count(self, user_id: int, user_kind: UserRole) -> int:
        with store_errors("unread_count"), self._session_factory() as db:
            return self._live(db, user_id, user_kind).filter(Notification.is_read.is_(False)).count()

    def stats_for(self, principal: Principal) -> NotificationStats:
        with store_errors("notification_stats"), self._session_factory() as db:
            rows = (
                self._live(db, principal.id, principal.kind)
                .with_entities(
                    Notification.category,
                    func.count(Notification.id),
                    func.sum(case((Notification.is_read.is_(False), 1), else_=0)),
                )
                .group_by(Notification.category)
                .all()
            )

        stats = [
            CategoryStats(category=category, count=count, unread_count=int(unread or 0))
            for category, count, unread in rows
        ]
        total = sum(s.count for s in stats)
        unread = sum(s.unread_count for s in stats)
        return NotificationStats(
            stats=stats,
            total_notifications=total,
            unread_notifications=unread,
            read_notifications=total - unread,
        )

    def delete(self, notification_id: int, requested_by: Principal) -> None:
        with store_errors("delete_notification"), self._session_factory() as db:
            notification = self._owned(db, notification_id, requested_by)
            db.delete(notification)
            db.commit()

    def purge_expired(self) -> int:
        """Delete expired events. Best-effort housekeeping."""
        with store_errors("purge_notifications"), self._session_factory() as db:
            purged = db.query(Notification).filter(
                Notification.expires_at <= self._clock()
            ).delete(synchronize_session=False)
            db.commit()
        if purged:
            logger.info(f"Purged {purged} expired notification(s)")
        return purged

    def _owned(self, db: Session, notification_id: int, principal: Principal) -> Notification:
        notification = db.get(Notification, notification_id)
        if notification is None or notification.expires_at <= self._clock():
            raise NotFoundError("Notification not found")
        if notification.recipient_id != principal.id or notification.recipient_kind != principal.kind:
            raise AuthorizationError("Not authorized to access this notification")
        return notification
