"""Process-wide service graph, built once at startup and kept on ``app.state``."""
from datetime import datetime, timedelta
from sqlalchemy.orm import sessionmaker
from typing import Callable, Optional

from ..core.config import settings
from .booking_service import SymptomBookingService
from .connection_registry import ConnectionRegistry
from .doctor_directory import DoctorDirectory, SqlDoctorDirectory
from .matching_service import DoctorMatcher
from .notification_service import NotificationDispatcher
from .scheduler_service import SlotScheduler
from .triage_service import KnowledgeBase, TriageClassifier, load_knowledge_base


class ServiceContainer:
    def __init__(
        self,
        classifier: TriageClassifier,
        directory: DoctorDirectory,
        matcher: DoctorMatcher,
        registry: ConnectionRegistry,
        dispatcher: NotificationDispatcher,
        scheduler: SlotScheduler,
        booking: SymptomBookingService,
    ):
        self.classifier = classifier
        self.directory = directory
        self.matcher = matcher
        self.registry = registry
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.booking = booking


def build_services(
    session_factory: sessionmaker,
    knowledge_base: Optional[KnowledgeBase] = None,
    directory: Optional[DoctorDirectory] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> ServiceContainer:
    if knowledge_base is None:
        knowledge_base = load_knowledge_base(settings.KNOWLEDGE_BASE_PATH)
    if directory is None:
        directory = SqlDoctorDirectory(session_factory, clock=clock)

    classifier = TriageClassifier(knowledge_base)
    matcher = DoctorMatcher(directory, knowledge_base.default_specialization)
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(
        session_factory,
        registry,
        ttl=timedelta(days=settings.NOTIFICATION_TTL_DAYS),
        clock=clock,
    )
    scheduler = SlotScheduler(
        session_factory,
        directory,
        dispatcher,
        clock=clock,
        duration_minutes=settings.APPOINTMENT_DURATION_MINUTES,
    )
    return ServiceContainer(
        classifier=classifier,
        directory=directory,
        matcher=matcher,
        registry=registry,
        dispatcher=dispatcher,
        scheduler=scheduler,
        booking=SymptomBookingService(classifier, matcher, scheduler),
    )
