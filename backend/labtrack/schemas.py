from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Any, Dict, Literal
from pydantic import BaseModel, EmailStr, ConfigDict, Field, field_validator
from uuid import UUID

RoleName = Literal["Lab Assistant", "Lab Incharge", "HOD"]


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    full_name: Optional[str] = None
    role: RoleName = "Lab Assistant"
    lab_id: Optional[UUID] = None


class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    full_name: Optional[str]
    role: str
    lab_id: Optional[UUID] = None
    is_active: bool = True
    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    role: Optional[RoleName] = None
    lab_id: Optional[UUID] = None
    is_active: Optional[bool] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LabCreate(BaseModel):
    name: str = Field(min_length=1)
    lab_identifier: str = Field(min_length=1, max_length=32)
    description: Optional[str] = None
    location: Optional[str] = None

    @field_validator("lab_identifier")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        if "/" in value:
            raise ValueError("lab identifier cannot contain '/'")
        return value.strip()


class LabUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    lab_identifier: Optional[str] = Field(default=None, min_length=1, max_length=32)
    description: Optional[str] = None
    location: Optional[str] = None

    @field_validator("lab_identifier")
    @classmethod
    def _no_separator(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and "/" in value:
            raise ValueError("lab identifier cannot contain '/'")
        return value.strip() if value is not None else value


class LabOut(BaseModel):
    id: UUID
    name: str
    lab_identifier: str
    description: Optional[str] = None
    location: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AssetTypeCreate(BaseModel):
    name: str = Field(min_length=1)
    identifier: str = Field(min_length=1, max_length=8)


class AssetTypeOut(BaseModel):
    id: UUID
    name: str
    identifier: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class EquipmentCreate(BaseModel):
    name: str = Field(min_length=1)
    asset_type_id: Optional[UUID] = None
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    rate: Decimal = Field(default=Decimal("0"), ge=0)
    quantity: int = Field(default=1, ge=1)
    remark: Optional[str] = None
    is_consumable: bool = False
    purchase_date: Optional[date] = None
    allocated_lab: Optional[UUID] = None


class EquipmentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    asset_type_id: Optional[UUID] = None
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    rate: Optional[Decimal] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=1)
    remark: Optional[str] = None
    is_consumable: Optional[bool] = None
    purchase_date: Optional[date] = None


class EquipmentOut(BaseModel):
    id: UUID
    asset_code: Optional[str] = None
    name: str
    asset_type_id: Optional[UUID] = None
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    rate: Decimal
    quantity: int
    total_amount: Decimal
    remark: Optional[str] = None
    is_consumable: bool
    purchase_date: Optional[date] = None
    allocated_lab: UUID
    lab_name: Optional[str] = None
    created_by: Optional[UUID] = None
    approved_by_incharge: Optional[UUID] = None
    approved_at_incharge: Optional[datetime] = None
    approved_by_hod: Optional[UUID] = None
    approved_at_hod: Optional[datetime] = None
    fully_approved: bool
    is_deleted: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class EquipmentDetail(EquipmentOut):
    state: str
    guards: Dict[str, bool] = Field(default_factory=dict)


class DeletedEquipmentOut(BaseModel):
    id: UUID
    equipment_id: Optional[UUID] = None
    name: str
    allocated_lab: Optional[UUID] = None
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    status: str
    deleted_by: Optional[UUID] = None
    deleted_at: datetime
    ratified_by: Optional[UUID] = None
    ratified_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class TransferCreate(BaseModel):
    equipment_id: UUID
    to_lab: UUID


class TransferOut(BaseModel):
    id: UUID
    equipment_id: UUID
    from_lab: UUID
    to_lab: UUID
    initiated_by: Optional[UUID] = None
    initiated_at: datetime
    status: str
    received_by: Optional[UUID] = None
    received_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class IssueCreate(BaseModel):
    equipment_id: UUID
    description: str = Field(min_length=1)


class IssueResolve(BaseModel):
    remark: Optional[str] = None
    cost_required: Optional[Decimal] = Field(default=None, ge=0)


class IssueOut(BaseModel):
    id: UUID
    equipment_id: UUID
    description: str
    reported_by: Optional[UUID] = None
    reported_at: datetime
    status: str
    resolved_by: Optional[UUID] = None
    resolved_at: Optional[datetime] = None
    remark: Optional[str] = None
    cost_required: Optional[Decimal] = None
    lab_id: Optional[UUID] = None
    model_config = ConfigDict(from_attributes=True)


class TransitionRequest(BaseModel):
    entity_kind: Literal["equipment", "transfer", "issue", "deleted_equipment"]
    transition: Literal[
        "record_incharge",
        "record_hod",
        "approve",
        "edit",
        "soft_delete",
        "mark_received",
        "resolve",
        "purge",
        "restore",
    ]
    entity_id: UUID
    params: Dict[str, Any] = Field(default_factory=dict)


class TransitionOut(BaseModel):
    ok: bool
    entity_kind: str
    transition: str
    entity_id: Optional[UUID] = None
    state: Optional[str] = None
    changed: bool = False
    rejection: Optional[Dict[str, Any]] = None


class GuardRequest(BaseModel):
    name: str
    entity_kind: Literal["equipment", "transfer", "issue", "deleted_equipment"]
    entity_id: UUID


class GuardOut(BaseModel):
    name: str
    allowed: bool


class NotificationOut(BaseModel):
    id: UUID
    event_id: UUID
    user_id: UUID
    actor_id: Optional[UUID] = None
    actor_name: Optional[str] = None
    action_type: str
    entity_type: str
    entity_id: Optional[UUID] = None
    entity_name: Optional[str] = None
    message: Optional[str] = None
    is_read: bool
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class UnreadCountOut(BaseModel):
    unread: int


class ActivityLogOut(BaseModel):
    id: UUID
    user_id: Optional[UUID] = None
    action_type: str
    entity_type: str
    entity_id: Optional[UUID] = None
    entity_name: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changes: Optional[Dict[str, Any]] = None
    severity_level: str
    success: bool
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ActivityReportRow(BaseModel):
    action: str
    count: int

