from sqlalchemy import Column, Integer, String, Date, DateTime, Text, JSON, Index, text, Enum as SQLEnum
from sqlalchemy.sql import func
import enum

from ..core.database import Base


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class AppointmentType(str, enum.Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    EMERGENCY = "emergency"
    ROUTINE_CHECKUP = "routine-checkup"


class AppointmentPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


ACTIVE_STATUSES = (
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
)
TERMINAL_STATUSES = (
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
)

_ACTIVE_SLOT_WHERE = text(
    "status IN (" + ", ".join(f"'{s.value}'" for s in ACTIVE_STATUSES) + ")"
)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)

    # Parties (owned by external collaborators, referenced by id)
    patient_id = Column(Integer, nullable=False, index=True)
    doctor_id = Column(Integer, nullable=False, index=True)

    # Slot
    appointment_date = Column(Date, nullable=False, index=True)
    appointment_time = Column(String(5), nullable=False)  # "HH:MM"
    duration_minutes = Column(Integer, nullable=False, default=30)

    # Appointment details
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=_values, native_enum=False, length=20),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    appointment_type = Column(
        SQLEnum(AppointmentType, values_callable=_values, native_enum=False, length=20),
        nullable=False,
        default=AppointmentType.CONSULTATION,
    )
    priority = Column(
        SQLEnum(AppointmentPriority, values_callable=_values, native_enum=False, length=10),
        nullable=False,
        default=AppointmentPriority.MEDIUM,
    )
    urgency_level = Column(String(20), nullable=True)
    symptoms = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    prescription_id = Column(Integer, nullable=True)

    # Feedback
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)

    # Tracking
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # At most one active appointment per slot
        Index(
            "uq_appointments_active_slot",
            "doctor_id", "appointment_date", "appointment_time",
            unique=True,
            sqlite_where=_ACTIVE_SLOT_WHERE,
            postgresql_where=_ACTIVE_SLOT_WHERE,
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return (
            f"<Appointment(id={self.id}, patient_id={self.patient_id}, doctor_id={self.doctor_id}, "
            f"date='{self.appointment_date}', time='{self.appointment_time}', status='{self.status}')>"
        )
