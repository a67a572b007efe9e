# policy.py
import logging
import math
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import func, or_
from sqlmodel import Session, select

from errors import ConflictError, NotFound, ValidationError
from models import (
    AccountStatus,
    InsuranceApproval,
    NotificationKind,
    NotificationType,
    PaymentStatus,
    User,
    UserRole,
    Vehicle,
    utcnow,
)
from notifications import NotificationSink, format_amount, format_date
from reminders import schedule_reminders

logger = logging.getLogger(__name__)

RENEWAL_WINDOW = timedelta(days=30)
RENEWAL_QUEUE_LIMIT = 50
DEFAULT_PAGE_SIZE = 10

STAFF_ONLY_FIELDS = ("chassis_number", "insurance_policy", "insurance_amount")
EDITABLE_FIELDS = ("registration_number", "model") + STAFF_ONLY_FIELDS


def normalize_registration(registration_number: str) -> str:
    return (registration_number or "").strip().upper()


def get_vehicle(session: Session, vehicle_id: int) -> Vehicle:
    vehicle = session.get(Vehicle, vehicle_id)
    if not vehicle:
        raise NotFound("Vehicle not found")
    return vehicle


def find_by_registration(session: Session, registration_number: str) -> Optional[Vehicle]:
    reg = normalize_registration(registration_number)
    return session.exec(select(Vehicle).where(Vehicle.registration_number == reg)).first()


def _validate_amount(insurance_amount) -> Optional[float]:
    if insurance_amount is None:
        return None
    try:
        amount = float(insurance_amount)
    except (TypeError, ValueError):
        raise ValidationError("Insurance amount must be a valid non-negative number")
    if math.isnan(amount) or amount < 0:
        raise ValidationError("Insurance amount must be a valid non-negative number")
    return amount


class PolicyService:
    """Staff-side mutations of a vehicle's policy record."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    def register_vehicle(
        self,
        session: Session,
        owner_id: int,
        registration_number: str,
        model: str,
        created_by: Optional[int] = None,
        chassis_number: Optional[str] = None,
        insurance_policy: str = "",
        insurance_amount: Optional[float] = None,
    ) -> Vehicle:
        reg = normalize_registration(registration_number)
        if not reg:
            raise ValidationError("Registration number is required")
        if not (model or "").strip():
            raise ValidationError("Vehicle model is required")
        amount = _validate_amount(insurance_amount)

        owner = session.get(User, owner_id)
        if not owner:
            raise NotFound("Customer not found")
        if find_by_registration(session, reg):
            raise ConflictError("Vehicle with this registration number already exists")

        vehicle = Vehicle(
            owner_id=owner.id,
            registration_number=reg,
            chassis_number=chassis_number.strip().upper() if chassis_number else None,
            model=model.strip(),
            insurance_policy=insurance_policy or "",
            insurance_amount=amount,
            payment_status=PaymentStatus.pending,
            created_by=created_by,
        )
        session.add(vehicle)
        session.commit()
        session.refresh(vehicle)
        logger.info(f"Vehicle {vehicle.registration_number} registered for user {owner.id}")

        if amount and amount > 0:
            self._notify_amount(session, owner, vehicle, amount, previous=None)
            session.refresh(vehicle)
        return vehicle

    def set_insurance_dates(
        self,
        session: Session,
        vehicle_id: int,
        start_date: Optional[datetime],
        expiry_date: Optional[datetime],
        staff_id: int,
        insurance_amount: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Vehicle:
        now = now or utcnow()
        if not start_date or not expiry_date:
            raise ValidationError("Both start date and expiry date are required")
        if expiry_date <= start_date:
            raise ValidationError("Expiry date must be after start date")
        if expiry_date <= now:
            raise ValidationError("Expiry date must be in the future")
        amount = _validate_amount(insurance_amount)

        vehicle = get_vehicle(session, vehicle_id)
        old_expiry = vehicle.expiry_date
        old_amount = vehicle.insurance_amount
        amount_updated = amount is not None and amount != old_amount

        vehicle.start_date = start_date
        vehicle.expiry_date = expiry_date
        if amount is not None:
            vehicle.insurance_amount = amount
        vehicle.insurance_set_by = staff_id
        vehicle.insurance_set_at = now
        vehicle.updated_at = now
        scheduled = schedule_reminders(vehicle)

        session.add(vehicle)
        session.commit()
        session.refresh(vehicle)
        if scheduled:
            logger.info(
                f"Scheduled {', '.join(k.value for k in scheduled)} reminders for {vehicle.registration_number}"
            )

        owner = session.get(User, vehicle.owner_id)
        if owner is None:
            return vehicle

        if old_expiry:
            title = "Insurance Dates Updated"
            message = (
                f"Insurance dates updated for your vehicle {vehicle.registration_number}. "
                f"New expiry: {format_date(expiry_date)}"
            )
        else:
            title = "Insurance Dates Set"
            message = (
                f"Insurance dates set for your vehicle {vehicle.registration_number}. "
                f"Coverage starts: {format_date(start_date)}, Expires: {format_date(expiry_date)}"
            )
        try:
            self.sink.notify(
                session,
                owner,
                title=title,
                message=message,
                type=NotificationType.update,
                kind=NotificationKind.dates_set,
                metadata={
                    "vehicleId": vehicle.id,
                    "startDate": start_date.isoformat(),
                    "expiryDate": expiry_date.isoformat(),
                },
                vehicle=vehicle,
            )
        except Exception as e:
            session.rollback()
            logger.error(f"Notification error (non-critical): {e}")

        if amount_updated and amount > 0:
            self._notify_amount(session, owner, vehicle, amount, previous=old_amount)
        session.refresh(vehicle)
        return vehicle

    def update_vehicle(
        self,
        session: Session,
        vehicle_id: int,
        editor: User,
        changes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Vehicle:
        """Edit a vehicle's details.

        Staff may edit any vehicle. Other users only edit vehicles they own or
        created, and never the staff-only fields (chassis, policy, amount).
        A changed positive amount notifies the owner as on registration.
        """
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")

        is_staff = editor.role == UserRole.staff
        vehicle = session.get(Vehicle, vehicle_id)
        if not vehicle or (not is_staff and editor.id not in (vehicle.owner_id, vehicle.created_by)):
            raise NotFound("Vehicle not found or not authorized")
        if not is_staff and any(name in changes for name in STAFF_ONLY_FIELDS):
            raise ValidationError("Chassis number, insurance policy and amount can only be updated by staff")

        old_registration = vehicle.registration_number
        registration = old_registration
        if "registration_number" in changes:
            registration = normalize_registration(changes["registration_number"])
            if not registration:
                raise ValidationError("Registration number is required")
            existing = find_by_registration(session, registration)
            if existing and existing.id != vehicle.id:
                raise ConflictError("Vehicle with this registration number already exists")
        if "model" in changes and not (changes["model"] or "").strip():
            raise ValidationError("Vehicle model is required")

        chassis = vehicle.chassis_number
        if "chassis_number" in changes:
            chassis = (changes["chassis_number"] or "").strip().upper() or None
            if chassis:
                duplicate = session.exec(
                    select(Vehicle).where(Vehicle.chassis_number == chassis).where(Vehicle.id != vehicle.id)
                ).first()
                if duplicate:
                    raise ConflictError("Vehicle with this chassis number already exists")

        amount = _validate_amount(changes.get("insurance_amount"))
        old_amount = vehicle.insurance_amount
        amount_updated = amount is not None and amount != old_amount

        now = now or utcnow()
        vehicle.registration_number = registration
        vehicle.chassis_number = chassis
        if "model" in changes:
            vehicle.model = changes["model"].strip()
        if "insurance_policy" in changes:
            vehicle.insurance_policy = changes["insurance_policy"] or ""
        if amount is not None:
            vehicle.insurance_amount = amount
        vehicle.updated_at = now
        session.add(vehicle)

        if registration != old_registration:
            # the approval record is keyed by registration number
            approval = session.exec(
                select(InsuranceApproval).where(InsuranceApproval.registration_number == old_registration)
            ).first()
            if approval:
                approval.registration_number = registration
                approval.updated_at = now
                session.add(approval)

        session.commit()
        session.refresh(vehicle)
        logger.info(f"Vehicle {vehicle.registration_number} updated by user {editor.id}")

        if amount_updated and amount > 0:
            owner = session.get(User, vehicle.owner_id)
            if owner is not None:
                self._notify_amount(session, owner, vehicle, amount, previous=old_amount)
                session.refresh(vehicle)
        return vehicle

    def _notify_amount(self, session: Session, owner: User, vehicle: Vehicle, amount: float, previous) -> None:
        verb = "updated" if previous else "set"
        message = (
            f"Insurance amount of ₹{format_amount(amount)} has been {verb} for your vehicle "
            f"{vehicle.registration_number} ({vehicle.model})."
        )
        if vehicle.start_date and vehicle.expiry_date:
            message += (
                f" Start Date: {format_date(vehicle.start_date)}, "
                f"Expiry Date: {format_date(vehicle.expiry_date)}."
            )
        message += " Please proceed with payment."
        try:
            self.sink.notify(
                session,
                owner,
                title=f"Insurance Amount {verb.capitalize()}",
                message=message,
                type=NotificationType.update,
                kind=NotificationKind.amount_set,
                metadata={
                    "vehicleId": vehicle.id,
                    "amount": amount,
                    "registrationNumber": vehicle.registration_number,
                    "model": vehicle.model,
                },
                vehicle=vehicle,
            )
        except Exception as e:
            session.rollback()
            logger.error(f"Amount notification error (non-critical): {e}")


def renewal_queue(session: Session, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Vehicles expiring within 30 days whose owners are active, soonest first."""
    now = now or utcnow()
    statement = (
        select(Vehicle, User)
        .join(User, Vehicle.owner_id == User.id)
        .where(Vehicle.expiry_date.is_not(None))
        .where(Vehicle.expiry_date >= now)
        .where(Vehicle.expiry_date <= now + RENEWAL_WINDOW)
        .where(User.account_status == AccountStatus.active)
        .order_by(Vehicle.expiry_date)
        .limit(RENEWAL_QUEUE_LIMIT)
    )
    queue = []
    for vehicle, owner in session.exec(statement).all():
        days_until_expiry = math.ceil((vehicle.expiry_date - now).total_seconds() / 86400)
        if days_until_expiry <= 1:
            category = "1 Day"
        elif days_until_expiry <= 7:
            category = "7 Days"
        else:
            category = "30 Days"
        queue.append({
            "vehicle": vehicle,
            "owner": owner,
            "days_until_expiry": days_until_expiry,
            "days_category": category,
        })
    return queue


def _matching(statement, search: Optional[str]):
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        statement = statement.where(
            or_(
                Vehicle.registration_number.ilike(pattern),
                Vehicle.chassis_number.ilike(pattern),
                Vehicle.model.ilike(pattern),
            )
        )
    return statement


def _paged(session: Session, statement, limit: int, offset: int) -> Tuple[List[Vehicle], int]:
    total = session.exec(select(func.count()).select_from(statement.subquery())).one()
    statement = statement.order_by(Vehicle.created_at.desc(), Vehicle.id.desc()).offset(offset).limit(limit)
    return list(session.exec(statement).all()), total


def vehicles_owned_by(
    session: Session,
    owner_id: int,
    search: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> Tuple[List[Vehicle], int]:
    """A customer's own vehicles, newest first, with the unpaged total."""
    statement = _matching(select(Vehicle).where(Vehicle.owner_id == owner_id), search)
    return _paged(session, statement, limit, offset)


def all_vehicles(
    session: Session,
    search: Optional[str] = None,
    chassis_number: Optional[str] = None,
    registration_number: Optional[str] = None,
    customer_id: Optional[int] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> Tuple[List[Vehicle], int]:
    statement = _matching(select(Vehicle), search)
    if chassis_number and chassis_number.strip():
        statement = statement.where(Vehicle.chassis_number.ilike(f"%{chassis_number.strip()}%"))
    if registration_number and registration_number.strip():
        statement = statement.where(Vehicle.registration_number.ilike(f"%{registration_number.strip()}%"))
    if customer_id is not None:
        statement = statement.where(Vehicle.owner_id == customer_id)
    return _paged(session, statement, limit, offset)


def vehicles_for_customer(session: Session, customer_id: int) -> List[Vehicle]:
    statement = (
        select(Vehicle)
        .where(Vehicle.owner_id == customer_id)
        .order_by(Vehicle.created_at.desc(), Vehicle.id.desc())
    )
    return list(session.exec(statement).all())
