# reminders.py
"""Reminder scheduling and the sweep that dispatches due reminders.

Each vehicle carries three independent reminders:

* activation  - 24 hours after ``start_date``
* month       - 30 days after ``start_date``
* pre-expiry  - 24 hours before ``expiry_date``

``schedule_reminders`` fills in a reminder's due time the first time its source
date is known and never moves it afterwards. ``ReminderScheduler.sweep`` finds
due, unsent reminders of one kind and sends each at most once; the
``..._sent`` flag is only ever flipped by a conditional update
(``WHERE sent IS false``) so overlapping sweeps cannot both dispatch.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from models import (
    AccountStatus,
    Notification,
    NotificationKind,
    NotificationType,
    User,
    UserRole,
    Vehicle,
    utcnow,
)
from notifications import NotificationSink, format_date

logger = logging.getLogger(__name__)

STALENESS_CUTOFF = timedelta(hours=24)


class ReminderKind(str, Enum):
    activation = "activation"
    month = "month"
    pre_expiry = "pre_expiry"


@dataclass(frozen=True)
class ReminderSpec:
    kind: ReminderKind
    source_field: str
    offset: timedelta
    title: str
    reminder_days: int
    notification_kind: NotificationKind

    @property
    def scheduled_field(self) -> str:
        return f"{self.kind.value}_reminder_scheduled_at"

    @property
    def sent_field(self) -> str:
        return f"{self.kind.value}_reminder_sent"

    def message(self, vehicle: Vehicle) -> str:
        reg = vehicle.registration_number
        start = format_date(vehicle.start_date)
        expiry = format_date(vehicle.expiry_date)
        if self.kind == ReminderKind.activation:
            return (
                f"Your vehicle {reg} insurance is now active! Started on {start} and expires on {expiry}. "
                f"Status: Good - Please note the renewal date for continuous coverage."
            )
        if self.kind == ReminderKind.month:
            return (
                f"Your vehicle {reg} insurance has been active for one month now. "
                f"Started on {start} and expires on {expiry}. Please ensure timely renewal."
            )
        return (
            f"Your vehicle {reg} insurance expires tomorrow on {expiry}. "
            f"Please renew immediately to avoid service interruptions and legal issues."
        )

    def metadata(self, vehicle: Vehicle) -> dict:
        meta = {"reminderDays": self.reminder_days}
        if self.kind == ReminderKind.pre_expiry:
            meta["preExpiry"] = True
        else:
            meta["postStart"] = True
            meta["startDate"] = vehicle.start_date.isoformat() if vehicle.start_date else None
        meta["expiryDate"] = vehicle.expiry_date.isoformat() if vehicle.expiry_date else None
        return meta

REMINDER_SPECS: Dict[ReminderKind, ReminderSpec] = {
    ReminderKind.activation: ReminderSpec(
        kind=ReminderKind.activation,
        source_field="start_date",
        offset=timedelta(hours=24),
        title="1 Day Activation Reminder",
        reminder_days=1,
        notification_kind=NotificationKind.activation_reminder,
    ),
    ReminderKind.month: ReminderSpec(
        kind=ReminderKind.month,
        source_field="start_date",
        offset=timedelta(days=30),
        title="1 Month Activation Reminder",
        reminder_days=30,
        notification_kind=NotificationKind.month_reminder,
    ),
    ReminderKind.pre_expiry: ReminderSpec(
        kind=ReminderKind.pre_expiry,
        source_field="expiry_date",
        offset=timedelta(hours=-24),
        title="1 Day Before Expiry Reminder",
        reminder_days=-1,
        notification_kind=NotificationKind.pre_expiry_reminder,
    ),
}


# ---------- Scheduling ----------
def schedule_reminders(vehicle: Vehicle) -> List[ReminderKind]:
    """Compute due times for reminders whose source date is set but which have none yet."""
    scheduled = []
    for spec in REMINDER_SPECS.values():
        source = getattr(vehicle, spec.source_field)
        if source is None or getattr(vehicle, spec.scheduled_field) is not None:
            continue
        setattr(vehicle, spec.scheduled_field, source + spec.offset)
        scheduled.append(spec.kind)
    return scheduled


# ---------- Sweep ----------
@dataclass
class SweepReport:
    kind: ReminderKind
    dispatched: int = 0
    skipped_stale: int = 0
    skipped_duplicate: int = 0
    emails_failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "dispatched": self.dispatched,
            "skippedStale": self.skipped_stale,
            "skippedDuplicate": self.skipped_duplicate,
            "emailsFailed": self.emails_failed,
            "errors": list(self.errors),
        }


def _eligible(owner: Optional[User]) -> bool:
    return (
        owner is not None
        and owner.role == UserRole.customer
        and owner.account_status == AccountStatus.active
    )


class ReminderScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        sink: NotificationSink,
        staleness_cutoff: timedelta = STALENESS_CUTOFF,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.staleness_cutoff = staleness_cutoff

    def due_vehicle_ids(self, session: Session, kind: ReminderKind, now: datetime) -> List[int]:
        spec = REMINDER_SPECS[ReminderKind(kind)]
        scheduled_col = getattr(Vehicle, spec.scheduled_field)
        sent_col = getattr(Vehicle, spec.sent_field)
        source_col = getattr(Vehicle, spec.source_field)
        statement = (
            select(Vehicle.id)
            .join(User, Vehicle.owner_id == User.id)
            .where(scheduled_col <= now)
            .where(sent_col.is_(False))
            .where(source_col.is_not(None))
            .where(User.role == UserRole.customer)
            .where(User.account_status == AccountStatus.active)
            .order_by(scheduled_col)
        )
        return list(session.exec(statement).all())

    def sweep(self, kind: ReminderKind, now: Optional[datetime] = None) -> SweepReport:
        """Dispatch every due reminder of ``kind``. One vehicle's failure never stops the rest."""
        spec = REMINDER_SPECS[ReminderKind(kind)]
        now = now or utcnow()
        report = SweepReport(kind=spec.kind)

        with self.session_factory() as session:
            vehicle_ids = self.due_vehicle_ids(session, spec.kind, now)
        logger.info(f"Found {len(vehicle_ids)} vehicles eligible for {spec.kind.value} reminder at {now} (UTC)")

        for vehicle_id in vehicle_ids:
            try:
                self._process(spec, vehicle_id, now, report)
            except Exception as e:
                logger.exception(f"{spec.kind.value} reminder failed for vehicle {vehicle_id}")
                report.errors.append(f"vehicle {vehicle_id}: {e}")

        logger.info(
            f"{spec.kind.value} sweep done: {report.dispatched} sent, "
            f"{report.skipped_stale} stale, {report.skipped_duplicate} duplicate, {len(report.errors)} errors"
        )
        return report

    def _process(self, spec: ReminderSpec, vehicle_id: int, now: datetime, report: SweepReport) -> None:
        with self.session_factory() as session:
            vehicle = session.get(Vehicle, vehicle_id)
            if vehicle is None or getattr(vehicle, spec.sent_field):
                return
            owner = session.get(User, vehicle.owner_id)
            if not _eligible(owner):
                # left unsent so it goes out once the account is active again
                return

            scheduled_at = getattr(vehicle, spec.scheduled_field)
            source_date = getattr(vehicle, spec.source_field)
            if scheduled_at is None or source_date is None:
                return

            if now - scheduled_at > self.staleness_cutoff:
                if self._claim(session, spec, vehicle_id):
                    session.commit()
                    report.skipped_stale += 1
                    logger.info(
                        f"Skipping past {spec.kind.value} reminder for {owner.email} "
                        f"(scheduled {scheduled_at}, now {now})"
                    )
                return

            if self._already_notified(session, spec, owner.id, source_date, now):
                if self._claim(session, spec, vehicle_id):
                    session.commit()
                    report.skipped_duplicate += 1
                    logger.info(f"Skipping duplicate {spec.kind.value} reminder for {owner.email} (already sent)")
                return

            if not self._claim(session, spec, vehicle_id):
                session.rollback()
                return

            notification = self.sink.create(
                session,
                user_id=owner.id,
                title=spec.title,
                message=spec.message(vehicle),
                type=NotificationType.reminder,
                kind=spec.notification_kind,
                metadata=spec.metadata(vehicle),
                reminder_kind=spec.kind.value,
                reminder_source_date=source_date,
                created_at=now,
            )
            session.commit()
            report.dispatched += 1

            if self.sink.deliver(session, notification, owner, vehicle):
                logger.info(f"{spec.title} sent to {owner.email} for {vehicle.registration_number}")
            else:
                report.emails_failed += 1

    def _claim(self, session: Session, spec: ReminderSpec, vehicle_id: int) -> bool:
        """Flip the sent flag if nobody else has. Not committed here."""
        sent_col = getattr(Vehicle, spec.sent_field)
        result = session.exec(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .where(sent_col.is_(False))
            .values({spec.sent_field: True})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _already_notified(
        self,
        session: Session,
        spec: ReminderSpec,
        user_id: int,
        source_date: datetime,
        now: datetime,
    ) -> bool:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        statement = (
            select(Notification.id)
            .where(Notification.user_id == user_id)
            .where(Notification.type == NotificationType.reminder)
            .where(Notification.reminder_kind == spec.kind.value)
            .where(Notification.reminder_source_date == source_date)
            .where(Notification.created_at >= day_start)
        )
        return session.exec(statement).first() is not None
