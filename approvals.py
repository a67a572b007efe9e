# approvals.py
import logging
from datetime import datetime
from typing import Optional, List

from sqlmodel import Session, select

from errors import AlreadyApproved, NotFound, ValidationError
from models import (
    ApprovalStatus,
    InsuranceApproval,
    NotificationKind,
    NotificationType,
    User,
    Vehicle,
    utcnow,
)
from notifications import NotificationSink
from policy import find_by_registration

logger = logging.getLogger(__name__)


class ApprovalWorkflow:
    """Staff submit a payment document for a vehicle; an admin approves or rejects it."""

    def __init__(self, sink: NotificationSink, document_base_url: str = ""):
        self.sink = sink
        self.document_base_url = document_base_url.rstrip("/")

    def document_url(self, filename: str) -> str:
        return f"{self.document_base_url}/uploads/payments/{filename}"

    def submit_document(
        self,
        session: Session,
        registration_number: str,
        document_ref: str,
        submitter_id: int,
        now: Optional[datetime] = None,
    ) -> InsuranceApproval:
        if not (registration_number or "").strip():
            raise ValidationError("Registration number is required")
        if not (document_ref or "").strip():
            raise ValidationError("Payment document is required")

        vehicle = find_by_registration(session, registration_number)
        if not vehicle:
            raise NotFound("Vehicle not found with this registration number")
        owner = session.get(User, vehicle.owner_id)
        if not owner:
            raise NotFound("Vehicle owner not found")

        now = now or utcnow()
        approval = session.exec(
            select(InsuranceApproval).where(InsuranceApproval.registration_number == vehicle.registration_number)
        ).first()
        if approval is None:
            approval = InsuranceApproval(
                registration_number=vehicle.registration_number,
                customer_name=owner.name,
                payment_status=ApprovalStatus.none,
                created_at=now,
            )
        else:
            approval.customer_name = owner.name

        approval.document_filename = document_ref
        approval.document_url = document_ref if "://" in document_ref else self.document_url(document_ref)
        approval.payment_status = ApprovalStatus.pending
        approval.submitted_by = submitter_id
        approval.submitted_at = now
        approval.updated_at = now

        session.add(approval)
        session.commit()
        session.refresh(approval)
        logger.info(f"Payment document for {approval.registration_number} submitted by user {submitter_id}")
        return approval

    def resolve(
        self,
        session: Session,
        approval_id: int,
        resolver_id: int,
        rejection_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> InsuranceApproval:
        """Approve when no reason is given, reject otherwise."""
        approval = session.get(InsuranceApproval, approval_id)
        if not approval:
            raise NotFound("Insurance record not found")

        rejecting = rejection_reason is not None
        if rejecting and not rejection_reason.strip():
            raise ValidationError("Rejection reason is required")
        if not rejecting and approval.payment_status == ApprovalStatus.approved:
            raise AlreadyApproved("Payment already approved")

        now = now or utcnow()
        if rejecting:
            approval.payment_status = ApprovalStatus.rejected
            approval.rejected_by = resolver_id
            approval.rejected_at = now
            approval.rejection_reason = rejection_reason.strip()
            approval.approved_by = None
            approval.approved_at = None
        else:
            approval.payment_status = ApprovalStatus.approved
            approval.approved_by = resolver_id
            approval.approved_at = now
            approval.rejection_reason = None
            approval.rejected_by = None
            approval.rejected_at = None
        approval.updated_at = now

        session.add(approval)
        session.commit()
        session.refresh(approval)
        logger.info(f"Payment for {approval.registration_number} {approval.payment_status.value} by user {resolver_id}")

        self._notify_owner(session, approval)
        session.refresh(approval)
        return approval

    def _notify_owner(self, session: Session, approval: InsuranceApproval) -> None:
        vehicle = find_by_registration(session, approval.registration_number)
        owner = session.get(User, vehicle.owner_id) if vehicle else None
        if owner is None:
            logger.warning(f"Associated vehicle/owner not found for {approval.registration_number}")
            return

        rejected = approval.payment_status == ApprovalStatus.rejected
        if rejected:
            title = "Insurance Payment Rejected"
            message = (
                f"Your insurance payment for vehicle {vehicle.registration_number} "
                f"was rejected: {approval.rejection_reason}"
            )
        else:
            title = "Insurance Payment Approved"
            message = (
                f"Your insurance payment for vehicle {vehicle.registration_number} has been approved. "
                f"Download the PDF from your portal."
            )
        try:
            self.sink.notify(
                session,
                owner,
                title=title,
                message=message,
                type=NotificationType.approval,
                kind=NotificationKind.approval_rejected if rejected else NotificationKind.approval_approved,
                metadata={
                    "registrationNumber": vehicle.registration_number,
                    "insuranceId": approval.id,
                },
                vehicle=vehicle,
                approval=approval,
            )
        except Exception as e:
            session.rollback()
            logger.error(f"Error sending notification email: {e}")


def pending_approvals(session: Session) -> List[InsuranceApproval]:
    statement = (
        select(InsuranceApproval)
        .where(InsuranceApproval.payment_status == ApprovalStatus.pending)
        .order_by(InsuranceApproval.created_at.desc())
    )
    return list(session.exec(statement).all())


def approvals_submitted_by(session: Session, staff_id: int) -> List[InsuranceApproval]:
    statement = (
        select(InsuranceApproval)
        .where(InsuranceApproval.submitted_by == staff_id)
        .order_by(InsuranceApproval.created_at.desc())
    )
    return list(session.exec(statement).all())


def approvals_for_customer(session: Session, customer_id: int) -> List[InsuranceApproval]:
    """Approval records of every vehicle the customer owns."""
    registrations = select(Vehicle.registration_number).where(Vehicle.owner_id == customer_id)
    statement = (
        select(InsuranceApproval)
        .where(InsuranceApproval.registration_number.in_(registrations))
        .order_by(InsuranceApproval.created_at.desc())
    )
    return list(session.exec(statement).all())
