# models.py
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, JSON, Index
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    # All timestamps are stored as naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_datetime(**kwargs) -> Column:
    # Holds naive UTC values from utcnow(); never a timezone-aware column type.
    return Column(DateTime(timezone=False), **kwargs)


# ---------- Enums ----------
class UserRole(str, Enum):
    customer = "customer"
    staff = "staff"
    admin = "admin"


class AccountStatus(str, Enum):
    pending = "pending"
    active = "active"
    banned = "banned"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"


class ApprovalStatus(str, Enum):
    none = "none"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class NotificationType(str, Enum):
    reminder = "reminder"
    approval = "approval"
    update = "update"
    success = "success"
    message = "message"


class NotificationKind(str, Enum):
    """Selects the email template; one member per kind of event."""

    activation_reminder = "activation_reminder"
    month_reminder = "month_reminder"
    pre_expiry_reminder = "pre_expiry_reminder"
    dates_set = "dates_set"
    amount_set = "amount_set"
    payment_success = "payment_success"
    payment_received = "payment_received"
    approval_approved = "approval_approved"
    approval_rejected = "approval_rejected"
    general = "general"


# ---------- Tables ----------
class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    name: str
    email: str = Field(index=True, unique=True)
    mobile: str = Field(default="")
    role: UserRole
    account_status: AccountStatus = AccountStatus.pending
    device_token: str = Field(default="")  # FCM token, empty when no device registered

    created_at: datetime = Field(default_factory=utcnow, sa_column=naive_datetime(nullable=False))


class Vehicle(SQLModel, table=True):
    """Policy record: one per vehicle, holding coverage, payment and reminder state."""

    id: Optional[int] = Field(default=None, primary_key=True)

    owner_id: int = Field(foreign_key="user.id", index=True)
    registration_number: str = Field(index=True, unique=True)  # e.g. "MH04AB1234"
    chassis_number: Optional[str] = None
    model: str
    insurance_policy: str = Field(default="")

    # Coverage window
    start_date: Optional[datetime] = Field(default=None, sa_column=naive_datetime())
    expiry_date: Optional[datetime] = Field(default=None, sa_column=naive_datetime(index=True))
    insurance_set_by: Optional[int] = Field(default=None, foreign_key="user.id")
    insurance_set_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime())

    # Premium payment
    insurance_amount: Optional[float] = None
    payment_status: PaymentStatus = PaymentStatus.pending
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_signature: Optional[str] = None
    paid_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime())

    # Reminder bookkeeping
    activation_reminder_scheduled_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime(index=True))
    activation_reminder_sent: bool = False
    month_reminder_scheduled_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime(index=True))
    month_reminder_sent: bool = False
    pre_expiry_reminder_scheduled_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime(index=True))
    pre_expiry_reminder_sent: bool = False

    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow, sa_column=naive_datetime(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=naive_datetime(nullable=False))


class InsuranceApproval(SQLModel, table=True):
    """Payment document submitted by staff and resolved by an admin."""

    __tablename__ = "insurance_approval"

    id: Optional[int] = Field(default=None, primary_key=True)

    registration_number: str = Field(index=True, unique=True)
    customer_name: str
    payment_status: ApprovalStatus = ApprovalStatus.none

    document_filename: str = Field(default="")
    document_url: str = Field(default="")
    submitted_by: Optional[int] = Field(default=None, foreign_key="user.id")
    submitted_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime())

    approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    approved_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime())
    rejected_by: Optional[int] = Field(default=None, foreign_key="user.id")
    rejected_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime())
    rejection_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_column=naive_datetime(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=naive_datetime(nullable=False))


class Notification(SQLModel, table=True):
    __table_args__ = (
        Index("ix_notification_user_created", "user_id", "created_at"),
        Index("ix_notification_user_seen", "user_id", "is_seen"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    user_id: int = Field(foreign_key="user.id")
    title: str = Field(max_length=100)
    message: str = Field(max_length=500)
    type: NotificationType
    kind: NotificationKind = NotificationKind.general
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))

    # Dedup keys for reminders
    reminder_kind: Optional[str] = Field(default=None, index=True)
    reminder_source_date: Optional[datetime] = Field(default=None, sa_column=naive_datetime())

    is_seen: bool = False
    seen_at: Optional[datetime] = Field(default=None, sa_column=naive_datetime())
    email_sent: bool = False

    created_at: datetime = Field(default_factory=utcnow, sa_column=naive_datetime(nullable=False))
