from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, Enum as SQLEnum
from sqlalchemy.sql import func
import enum

from ..core.database import Base


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)

    # Personal information
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    specialization = Column(String(100), nullable=False, index=True)

    # Approval is decided by the admin workflow; read-only here
    status = Column(
        SQLEnum(ApprovalStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=10),
        nullable=False,
        default=ApprovalStatus.PENDING,
    )

    # Availability
    is_online = Column(Boolean, nullable=False, default=False)
    last_active = Column(DateTime, nullable=True)

    # Reputation
    rating = Column(Float, nullable=False, default=0.0)
    total_reviews = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED

    def __repr__(self):
        return f"<Doctor(id={self.id}, name='{self.first_name} {self.last_name}', specialization='{self.specialization}')>"
