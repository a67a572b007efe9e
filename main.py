# main.py
import logging
import math
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import FastAPI, Request, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from approvals import (
    ApprovalWorkflow,
    approvals_for_customer,
    approvals_submitted_by,
    pending_approvals,
)
from config import settings
from database import create_db_and_tables, get_session, session_factory
from errors import Forbidden, InsuranceError
from gateway import RazorpayGateway
from models import AccountStatus, User, UserRole, utcnow
from notifications import (
    FirebasePushSender,
    NotificationSink,
    SmtpEmailSender,
    list_notifications,
    mark_all_seen,
    mark_seen,
    unseen_count,
)
from payments import PaymentWorkflow
from policy import (
    PolicyService,
    all_vehicles,
    renewal_queue,
    vehicles_for_customer,
    vehicles_owned_by,
)
from reminders import ReminderKind, ReminderScheduler
from sweep import SweepDriver

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


# ---------- Wiring ----------
sink = NotificationSink(SmtpEmailSender(settings), FirebasePushSender(settings), settings)
gateway = RazorpayGateway(settings)
policy_service = PolicyService(sink)
payment_workflow = PaymentWorkflow(gateway, sink, currency=settings.PAYMENT_CURRENCY)
approval_workflow = ApprovalWorkflow(sink, document_base_url=settings.BACKEND_URL)
reminder_scheduler = ReminderScheduler(session_factory, sink)
sweep_driver = SweepDriver(reminder_scheduler, interval_minutes=settings.SWEEP_INTERVAL_MINUTES)


def get_policy_service() -> PolicyService:
    return policy_service


def get_payment_workflow() -> PaymentWorkflow:
    return payment_workflow


def get_approval_workflow() -> ApprovalWorkflow:
    return approval_workflow


def get_sweep_driver() -> SweepDriver:
    return sweep_driver


# ---------- App ----------
app = FastAPI(title="Vehicle Insurance Coverage")


@app.exception_handler(InsuranceError)
async def insurance_error_handler(request: Request, exc: InsuranceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message},
    )


# ---------- Auth helper (dependency) ----------
def current_user(
    x_user_id: Optional[int] = Header(default=None),
    session: Session = Depends(get_session),
) -> User:
    """
    Identify the acting user from the X-User-Id header.
    Authentication itself happens upstream of this service.
    """
    user = session.get(User, x_user_id) if x_user_id is not None else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if user.account_status == AccountStatus.banned:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is banned")
    return user


def require_role(user: User, *roles: UserRole) -> None:
    if user.role not in roles:
        raise Forbidden(f"Only {' or '.join(r.value for r in roles)} users can perform this action")


# ---------- Request bodies ----------
class VehicleCreate(BaseModel):
    customer_id: int
    registration_number: str
    model: str
    chassis_number: Optional[str] = None
    insurance_policy: str = ""
    insurance_amount: Optional[float] = None


class InsuranceDates(BaseModel):
    start_date: datetime
    expiry_date: datetime
    insurance_amount: Optional[float] = None


class PaymentVerification(BaseModel):
    order_id: str
    payment_id: str
    signature: str


class DocumentSubmission(BaseModel):
    registration_number: str
    document_ref: str


class Resolution(BaseModel):
    rejection_reason: Optional[str] = None


class VehicleUpdate(BaseModel):
    registration_number: Optional[str] = None
    model: Optional[str] = None
    chassis_number: Optional[str] = None
    insurance_policy: Optional[str] = None
    insurance_amount: Optional[float] = None


class DeviceToken(BaseModel):
    token: str


# ---------- Startup / Shutdown ----------
@app.on_event("startup")
def on_startup():
    create_db_and_tables()
    if settings.ENABLE_SCHEDULER:
        sweep_driver.start()


@app.on_event("shutdown")
def on_shutdown():
    sweep_driver.shutdown()


@app.get("/api/health")
def health(driver: SweepDriver = Depends(get_sweep_driver)):
    return {
        "status": "OK",
        "timestamp": utcnow().isoformat(),
        "timezone": "UTC",
        "cronStatus": "Active" if driver.running else "Stopped",
    }


# ---------- Vehicles / policy ----------
@app.post("/api/vehicles", status_code=status.HTTP_201_CREATED)
def create_vehicle(
    body: VehicleCreate,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    service: PolicyService = Depends(get_policy_service),
):
    require_role(user, UserRole.staff)
    vehicle = service.register_vehicle(
        session,
        owner_id=body.customer_id,
        registration_number=body.registration_number,
        model=body.model,
        created_by=user.id,
        chassis_number=body.chassis_number,
        insurance_policy=body.insurance_policy,
        insurance_amount=body.insurance_amount,
    )
    return {"success": True, "data": vehicle}


@app.put("/api/vehicles/{vehicle_id}/insurance-dates")
def set_insurance_dates(
    vehicle_id: int,
    body: InsuranceDates,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    service: PolicyService = Depends(get_policy_service),
):
    require_role(user, UserRole.staff, UserRole.admin)
    vehicle = service.set_insurance_dates(
        session,
        vehicle_id,
        _naive_utc(body.start_date),
        _naive_utc(body.expiry_date),
        staff_id=user.id,
        insurance_amount=body.insurance_amount,
    )
    return {"success": True, "message": "Insurance dates set successfully", "data": vehicle}


@app.put("/api/vehicles/{vehicle_id}")
def update_vehicle(
    vehicle_id: int,
    body: VehicleUpdate,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    service: PolicyService = Depends(get_policy_service),
):
    require_role(user, UserRole.customer, UserRole.staff)
    vehicle = service.update_vehicle(session, vehicle_id, user, body.model_dump(exclude_unset=True))
    return {"success": True, "message": "Vehicle updated successfully", "data": vehicle}


@app.get("/api/vehicles/my-vehicles")
def get_my_vehicles(
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    require_role(user, UserRole.customer)
    page, limit, offset = _paging(page, limit)
    vehicles, total = vehicles_owned_by(session, user.id, search=search, limit=limit, offset=offset)
    approvals = {a.registration_number: a for a in approvals_for_customer(session, user.id)}
    data = [
        {**vehicle.model_dump(), "approval": approvals.get(vehicle.registration_number)}
        for vehicle in vehicles
    ]
    return {"success": True, "data": data, **_page_info(page, limit, total)}


@app.get("/api/vehicles/list")
def get_all_vehicles(
    search: Optional[str] = None,
    chassis_no: Optional[str] = None,
    reg_no: Optional[str] = None,
    customer_id: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    require_role(user, UserRole.staff, UserRole.admin)
    page, limit, offset = _paging(page, limit)
    vehicles, total = all_vehicles(
        session,
        search=search,
        chassis_number=chassis_no,
        registration_number=reg_no,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
    )
    return {"success": True, "data": vehicles, **_page_info(page, limit, total)}


@app.get("/api/vehicles/customer/{customer_id}")
def get_customer_vehicles(
    customer_id: int,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    require_role(user, UserRole.staff, UserRole.admin)
    data = vehicles_for_customer(session, customer_id)
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/vehicles/renewal-queue")
def get_renewal_queue(
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    require_role(user, UserRole.staff, UserRole.admin)
    queue = renewal_queue(session)
    data = [
        {
            **entry["vehicle"].model_dump(),
            "ownerName": entry["owner"].name,
            "daysUntilExpiry": entry["days_until_expiry"],
            "daysCategory": entry["days_category"],
        }
        for entry in queue
    ]
    return {"success": True, "count": len(data), "data": data}


# ---------- Payment ----------
@app.post("/api/vehicles/{vehicle_id}/payment/initiate")
def initiate_payment(
    vehicle_id: int,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    order = workflow.initiate_payment(session, vehicle_id, user.id)
    return {"success": True, "message": "Payment order created successfully", "data": order}


@app.post("/api/vehicles/{vehicle_id}/payment/verify")
def verify_payment(
    vehicle_id: int,
    body: PaymentVerification,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    vehicle = workflow.verify_payment(
        session, vehicle_id, body.order_id, body.payment_id, body.signature, user.id
    )
    return {"success": True, "message": "Payment verified successfully", "data": vehicle}


# ---------- Payment documents / approval ----------
@app.post("/api/insurance/upload")
def upload_payment_document(
    body: DocumentSubmission,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
):
    require_role(user, UserRole.staff)
    approval = workflow.submit_document(session, body.registration_number, body.document_ref, user.id)
    return {"success": True, "message": "Payment PDF uploaded successfully", "data": approval}


@app.put("/api/insurance/{approval_id}/approve")
def resolve_payment(
    approval_id: int,
    body: Resolution,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
):
    require_role(user, UserRole.admin)
    approval = workflow.resolve(session, approval_id, user.id, body.rejection_reason)
    verb = "rejected" if body.rejection_reason is not None else "approved"
    return {"success": True, "message": f"Payment {verb} successfully", "data": approval}


@app.get("/api/insurance/pending")
def get_pending_payments(
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    require_role(user, UserRole.staff, UserRole.admin)
    data = pending_approvals(session)
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/insurance/my-insurances")
def get_my_insurances(
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    data = approvals_for_customer(session, user.id)
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/insurance/my-uploads")
def get_my_uploads(
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    require_role(user, UserRole.staff)
    data = approvals_submitted_by(session, user.id)
    return {"success": True, "count": len(data), "data": data}


# ---------- Notifications ----------
@app.get("/api/notifications")
def get_notifications(
    seen: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    page, limit, offset = _paging(page, limit)
    data = list_notifications(session, user.id, seen=seen, limit=limit, offset=offset)
    return {"success": True, "count": len(data), "page": page, "limit": limit, "data": data}


@app.get("/api/notifications/unseen-count")
def get_unseen_count(
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    return {"success": True, "data": {"unseen": unseen_count(session, user.id)}}


@app.put("/api/notifications/seen-all")
def mark_all_notifications_seen(
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    updated = mark_all_seen(session, user.id)
    return {"success": True, "message": f"{updated} notifications marked as seen"}


@app.put("/api/notifications/{notification_id}/seen")
def mark_notification_seen(
    notification_id: int,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    notification = mark_seen(session, notification_id, user.id)
    return {"success": True, "message": "Notification marked as seen", "data": notification}


@app.post("/api/users/device-token")
def register_device(
    body: DeviceToken,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    token = body.token.strip()
    if not token:
        logger.warning(f"Empty device token received from user {user.id}")
        return {"success": False}
    user.device_token = token
    session.add(user)
    session.commit()
    logger.info(f"Device token saved for user {user.id}: {token[:30]}")
    return {"success": True}


# ---------- Reminders ----------
@app.post("/api/reminders/trigger")
def trigger_reminders(
    kind: Optional[ReminderKind] = None,
    user: User = Depends(current_user),
    driver: SweepDriver = Depends(get_sweep_driver),
):
    require_role(user, UserRole.admin)
    if kind is not None:
        reports = [driver.trigger(kind)]
    else:
        reports = list(driver.trigger_all().values())
    return {
        "success": True,
        "message": "Manual reminder run completed",
        "remindersSent": sum(r.dispatched for r in reports),
        "data": [r.to_dict() for r in reports],
        "timestamp": utcnow().isoformat(),
    }


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _paging(page: int, limit: int) -> Tuple[int, int, int]:
    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return page, limit, (page - 1) * limit


def _page_info(page: int, limit: int, total: int) -> dict:
    return {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)}
