import uuid
from decimal import Decimal
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lab(Base):
    __tablename__ = "labs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String)
    location = Column(String)
    lab_identifier = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    members = relationship("User", back_populates="lab")


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String)
    # Lab Assistant, Lab Incharge, HOD
    role = Column(String, nullable=False, default="Lab Assistant")
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    lab = relationship("Lab", back_populates="members")
    notifications = relationship(
        "Notification",
        back_populates="user",
        cascade="all, delete-orphan",
        foreign_keys="Notification.user_id",
    )


class AssetType(Base):
    __tablename__ = "asset_types"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, unique=True, nullable=False)
    # short prefix used in asset codes, e.g. PC, PR, NW
    identifier = Column(String, unique=True, nullable=False)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Equipment(Base):
    __tablename__ = "equipment"
    __table_args__ = (
        sa.CheckConstraint("rate >= 0", name="ck_equipment_rate_non_negative"),
        sa.CheckConstraint("quantity >= 1", name="ck_equipment_quantity_positive"),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    asset_code = Column(String, index=True)
    name = Column(String, nullable=False)
    asset_type_id = Column(UUID(as_uuid=True), ForeignKey("asset_types.id"), nullable=True)
    invoice_number = Column(String)
    description = Column(Text)
    rate = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    quantity = Column(Integer, nullable=False, default=1)
    remark = Column(Text)
    is_consumable = Column(Boolean, default=False, nullable=False)
    purchase_date = Column(Date, default=lambda: _utcnow().date())
    allocated_lab = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False, index=True)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    approved_by_incharge = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    approved_at_incharge = Column(DateTime(timezone=True))
    approved_by_hod = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    approved_at_hod = Column(DateTime(timezone=True))
    # purpose: derived conjunction of both approval slots, written in the same statement as a slot
    fully_approved = Column(Boolean, default=False, nullable=False, index=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    lab = relationship("Lab", foreign_keys=[allocated_lab])
    asset_type = relationship("AssetType")
    creator = relationship("User", foreign_keys=[created_by])
    incharge_approver = relationship("User", foreign_keys=[approved_by_incharge])
    hod_approver = relationship("User", foreign_keys=[approved_by_hod])
    issues = relationship("Issue", back_populates="equipment", passive_deletes=True)
    transfers = relationship("Transfer", back_populates="equipment", passive_deletes=True)

    @property
    def total_amount(self) -> Decimal:
        return Decimal(self.rate or 0) * (self.quantity or 0)

    @property
    def lab_name(self) -> str | None:
        return self.lab.name if self.lab is not None else None


class DeletedEquipment(Base):
    __tablename__ = "deleted_equipment"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    equipment_id = Column(UUID(as_uuid=True), ForeignKey("equipment.id", ondelete="SET NULL"), nullable=True)
    name = Column(String, nullable=False)
    allocated_lab = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=True)
    snapshot = Column(JSON, default=dict)
    # pending, purged, restored
    status = Column(String, default="pending", nullable=False, index=True)
    deleted_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    deleted_at = Column(DateTime(timezone=True), default=_utcnow)
    ratified_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    ratified_at = Column(DateTime(timezone=True))

    equipment = relationship("Equipment")


class Transfer(Base):
    __tablename__ = "transfers"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    equipment_id = Column(UUID(as_uuid=True), ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    from_lab = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False, index=True)
    to_lab = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False, index=True)
    initiated_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    initiated_at = Column(DateTime(timezone=True), default=_utcnow)
    # pending, received
    status = Column(String, default="pending", nullable=False, index=True)
    received_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    received_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    equipment = relationship("Equipment", back_populates="transfers")


class Issue(Base):
    __tablename__ = "issues"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    equipment_id = Column(UUID(as_uuid=True), ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    reported_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    reported_at = Column(DateTime(timezone=True), default=_utcnow)
    # open, resolved
    status = Column(String, default="open", nullable=False, index=True)
    resolved_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    resolved_at = Column(DateTime(timezone=True))
    remark = Column(Text)
    cost_required = Column(Numeric(10, 2))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    equipment = relationship("Equipment", back_populates="issues")

    @property
    def lab_id(self):
        # the issue's scope follows the equipment's current allocation
        return self.equipment.allocated_lab if self.equipment is not None else None


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.UniqueConstraint("event_id", "user_id", name="uq_notifications_event_recipient"),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    action_type = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(UUID(as_uuid=True))
    entity_name = Column(String)
    message = Column(String)
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    user = relationship("User", back_populates="notifications", foreign_keys=[user_id])
    actor = relationship("User", foreign_keys=[actor_id])

    @property
    def actor_name(self) -> str | None:
        return self.actor.full_name if self.actor is not None else None


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    action_type = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(UUID(as_uuid=True))
    entity_name = Column(String)
    old_values = Column(JSON)
    new_values = Column(JSON)
    changes = Column(JSON)
    # info, warning, error, critical
    severity_level = Column(String, default="info", nullable=False)
    success = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
