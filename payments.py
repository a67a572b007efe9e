# payments.py
"""Premium payment: gateway order creation and checkout verification.

A vehicle moves ``pending -> paid`` only after the checkout signature returned
by the gateway verifies against our secret. The transition is a conditional
update, so a repeated or concurrent verification becomes a no-op instead of a
second payment.
"""
import logging
import time
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from errors import (
    AlreadyPaid,
    Forbidden,
    GatewayError,
    InvalidAmount,
    SignatureInvalid,
    Unconfigured,
    ValidationError,
)
from gateway import RazorpayGateway
from models import (
    AccountStatus,
    NotificationKind,
    NotificationType,
    PaymentStatus,
    User,
    UserRole,
    Vehicle,
    utcnow,
)
from notifications import NotificationSink, format_amount
from policy import get_vehicle

logger = logging.getLogger(__name__)


def amount_in_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class PaymentWorkflow:
    def __init__(self, gateway: RazorpayGateway, sink: NotificationSink, currency: str = "INR"):
        self.gateway = gateway
        self.sink = sink
        self.currency = currency

    def initiate_payment(self, session: Session, vehicle_id: int, requester_id: int) -> Dict[str, Any]:
        """Create a gateway order for the vehicle's premium and remember its id."""
        if not self.gateway.configured:
            logger.error("Razorpay credentials missing")
            raise Unconfigured("Payment gateway not configured. Please contact administrator.")

        vehicle = get_vehicle(session, vehicle_id)
        if vehicle.owner_id != requester_id:
            raise Forbidden("Not authorized to pay for this vehicle")
        if not vehicle.insurance_amount or vehicle.insurance_amount <= 0:
            raise InvalidAmount("Insurance amount not set for this vehicle")
        if vehicle.payment_status == PaymentStatus.paid:
            raise AlreadyPaid("Insurance payment already completed for this vehicle")

        receipt = f"INS_{str(int(time.time() * 1000))[-8:]}"
        logger.info(f"Creating Razorpay order with receipt: {receipt}")
        try:
            order = self.gateway.create_order(
                amount_in_minor_units(vehicle.insurance_amount),
                self.currency,
                receipt,
                notes={
                    "vehicleId": str(vehicle.id)[-12:],
                    "regNo": vehicle.registration_number,
                    "userId": str(requester_id)[-12:],
                },
            )
        except (GatewayError, Unconfigured):
            raise
        except Exception as e:
            logger.error(f"Razorpay API error: {e}")
            raise GatewayError(str(e) or "Razorpay API error") from e

        if not order or not order.get("id"):
            raise GatewayError("Invalid response from payment gateway")

        vehicle.order_id = order["id"]
        vehicle.updated_at = utcnow()
        session.add(vehicle)
        session.commit()
        logger.info(f"Razorpay order {order['id']} created for vehicle {vehicle.registration_number}")

        return {
            "key": self.gateway.key_id,
            "orderId": order["id"],
            "amount": order.get("amount"),
            "currency": order.get("currency", self.currency),
            "vehicleId": vehicle.id,
            "registrationNumber": vehicle.registration_number,
            "insuranceAmount": vehicle.insurance_amount,
        }

    def verify_payment(
        self,
        session: Session,
        vehicle_id: int,
        order_id: str,
        payment_id: str,
        signature: str,
        requester_id: int,
        now: Optional[datetime] = None,
    ) -> Vehicle:
        if not order_id or not payment_id or not signature:
            raise ValidationError("Missing payment verification parameters")
        if not self.gateway.secret:
            raise Unconfigured("Payment gateway not configured. Please contact administrator.")
        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.error(f"Signature mismatch for order {order_id}")
            raise SignatureInvalid("Invalid payment signature")

        vehicle = get_vehicle(session, vehicle_id)
        if vehicle.owner_id != requester_id:
            raise Forbidden("Not authorized")
        if vehicle.order_id and vehicle.order_id != order_id:
            raise ValidationError("Order does not belong to this vehicle")

        if vehicle.payment_status == PaymentStatus.paid:
            if vehicle.payment_id == payment_id:
                logger.info(f"Payment {payment_id} for {vehicle.registration_number} already verified")
                return vehicle
            raise AlreadyPaid("Insurance payment already completed for this vehicle")

        now = now or utcnow()
        result = session.exec(
            update(Vehicle)
            .where(Vehicle.id == vehicle.id)
            .where(Vehicle.payment_status != PaymentStatus.paid)
            .values(
                payment_status=PaymentStatus.paid,
                order_id=order_id,
                payment_id=payment_id,
                payment_signature=signature,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(vehicle)

        if result.rowcount != 1:
            # a concurrent verification won the race
            if vehicle.payment_id == payment_id:
                return vehicle
            raise AlreadyPaid("Insurance payment already completed for this vehicle")

        logger.info(f"Payment {payment_id} verified for vehicle {vehicle.registration_number}")
        self._notify_paid(session, vehicle, payment_id)
        session.refresh(vehicle)
        return vehicle

    def _notify_paid(self, session: Session, vehicle: Vehicle, payment_id: str) -> None:
        owner = session.get(User, vehicle.owner_id)
        amount = format_amount(vehicle.insurance_amount)

        try:
            self.sink.notify(
                session,
                owner,
                title="Insurance Payment Successful",
                message=(
                    f"Payment of ₹{amount} for vehicle {vehicle.registration_number} ({vehicle.model}) "
                    f"completed successfully. Payment ID: {payment_id}"
                ),
                type=NotificationType.success,
                kind=NotificationKind.payment_success,
                metadata={
                    "vehicleId": vehicle.id,
                    "amount": vehicle.insurance_amount,
                    "paymentId": payment_id,
                    "registrationNumber": vehicle.registration_number,
                    "model": vehicle.model,
                },
                vehicle=vehicle,
            )
        except Exception as e:
            session.rollback()
            logger.error(f"Customer notification error (non-critical): {e}")

        staff_users = session.exec(
            select(User)
            .where(User.role == UserRole.staff)
            .where(User.account_status == AccountStatus.active)
        ).all()
        for staff_user in staff_users:
            try:
                self.sink.notify(
                    session,
                    staff_user,
                    title="Customer Payment Received",
                    message=(
                        f"Customer {owner.name} has successfully paid ₹{amount} for vehicle "
                        f"{vehicle.registration_number} ({vehicle.model}). Payment ID: {payment_id}"
                    ),
                    type=NotificationType.success,
                    kind=NotificationKind.payment_received,
                    metadata={
                        "vehicleId": vehicle.id,
                        "amount": vehicle.insurance_amount,
                        "paymentId": payment_id,
                        "customerId": owner.id,
                        "customerName": owner.name,
                        "registrationNumber": vehicle.registration_number,
                        "model": vehicle.model,
                    },
                    vehicle=vehicle,
                )
            except Exception as e:
                session.rollback()
                logger.error(f"Staff notification error for {staff_user.email}: {e}")
