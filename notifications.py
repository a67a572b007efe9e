# notifications.py
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Optional, Dict, Any, List, Callable, Tuple

import firebase_admin
from firebase_admin import credentials, messaging
from sqlalchemy import func, update
from sqlmodel import Session, select

from config import Settings, settings as default_settings
from errors import ConflictError, EmailError, NotFound
from models import (
    InsuranceApproval,
    Notification,
    NotificationKind,
    NotificationType,
    User,
    Vehicle,
    utcnow,
)

logger = logging.getLogger(__name__)


# ---------- Formatting helpers ----------
def format_amount(amount: Optional[float]) -> str:
    if amount is None:
        return "0"
    if float(amount).is_integer():
        return f"{amount:,.0f}"
    return f"{amount:,.2f}"


def format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "not set"
    return value.strftime("%a %b %d %Y")


# ---------- Email templates ----------
def _wrap(body: str) -> str:
    return f"""
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #f8f9fa; padding: 20px; border-radius: 8px;">
          {body}
        </div>
        <div style="text-align: center; color: #7f8c8d; font-size: 12px; margin-top: 30px;">
          <p>&copy; Vehicle Insurance System. All rights reserved.</p>
        </div>
      </div>
    """


def _vehicle_table(vehicle: Optional[Vehicle], amount: Optional[float] = None) -> str:
    if vehicle is None:
        return ""
    rows = [
        ("Vehicle", vehicle.model),
        ("Registration No", vehicle.registration_number),
    ]
    if amount is not None:
        rows.append(("Insurance Amount", f"&#8377;{format_amount(amount)}"))
    if vehicle.start_date:
        rows.append(("Start Date", format_date(vehicle.start_date)))
    if vehicle.expiry_date:
        rows.append(("Expiry Date", format_date(vehicle.expiry_date)))
    cells = "".join(
        f'<tr><td style="padding: 8px 0; color: #555; font-weight: bold;">{label}:</td>'
        f'<td style="padding: 8px 0; color: #333;">{value}</td></tr>'
        for label, value in rows
    )
    return f'<table style="width: 100%; border-collapse: collapse;">{cells}</table>'


def _portal_link(cfg: Settings) -> str:
    return f'<p><a href="{cfg.FRONTEND_URL}" style="color: #3498db;">Open your portal</a></p>'


def _reminder_template(user, notification, vehicle, approval, cfg):
    body = f"""
      <h2 style="color: #e67e22;">{notification.title}</h2>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
      {_vehicle_table(vehicle)}
      {_portal_link(cfg)}
    """
    return notification.title, _wrap(body)


def _update_template(user, notification, vehicle, approval, cfg):
    body = f"""
      <h2 style="color: #1976d2;">{notification.title}</h2>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
      {_vehicle_table(vehicle)}
    """
    return notification.title, _wrap(body)


def _amount_template(user, notification, vehicle, approval, cfg):
    amount = notification.meta.get("amount")
    registration = vehicle.registration_number if vehicle else notification.meta.get("registrationNumber", "")
    subject = f"{notification.title} - {registration}" if registration else notification.title
    body = f"""
      <div style="background: #e3f2fd; border-left: 4px solid #2196f3; padding: 15px; margin-bottom: 20px;">
        <h3 style="color: #1976d2; margin-top: 0;">Insurance Amount Notification</h3>
      </div>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
      {_vehicle_table(vehicle, amount)}
      {_portal_link(cfg)}
    """
    return subject, _wrap(body)


def _payment_template(user, notification, vehicle, approval, cfg):
    payment_id = notification.meta.get("paymentId", "")
    body = f"""
      <h2 style="color: #27ae60;">{notification.title}</h2>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
      {_vehicle_table(vehicle, notification.meta.get("amount"))}
      <p style="color: #555;">Payment ID: <strong>{payment_id}</strong></p>
    """
    return notification.title, _wrap(body)


def _approved_template(user, notification, vehicle, approval, cfg):
    body = f"""
      <h2 style="color: #27ae60;">{notification.title}</h2>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
      {_portal_link(cfg)}
    """
    return notification.title, _wrap(body)


def _rejected_template(user, notification, vehicle, approval, cfg):
    reason = approval.rejection_reason if approval and approval.rejection_reason else ""
    body = f"""
      <h2 style="color: #c0392b;">{notification.title}</h2>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
      <p style="color: #555;">Reason: <em>{reason}</em></p>
      {_portal_link(cfg)}
    """
    return notification.title, _wrap(body)


def _general_template(user, notification, vehicle, approval, cfg):
    body = f"""
      <h2 style="color: #3498db;">{notification.title}</h2>
      <p style="color: #34495e;">Dear {user.name},</p>
      <p>{notification.message}</p>
    """
    return notification.title, _wrap(body)


EmailTemplate = Callable[..., Tuple[str, str]]

EMAIL_TEMPLATES: Dict[NotificationKind, EmailTemplate] = {
    NotificationKind.activation_reminder: _reminder_template,
    NotificationKind.month_reminder: _reminder_template,
    NotificationKind.pre_expiry_reminder: _reminder_template,
    NotificationKind.dates_set: _update_template,
    NotificationKind.amount_set: _amount_template,
    NotificationKind.payment_success: _payment_template,
    NotificationKind.payment_received: _payment_template,
    NotificationKind.approval_approved: _approved_template,
    NotificationKind.approval_rejected: _rejected_template,
    NotificationKind.general: _general_template,
}


def render_email(
    user: User,
    notification: Notification,
    vehicle: Optional[Vehicle] = None,
    approval: Optional[InsuranceApproval] = None,
    cfg: Settings = default_settings,
) -> Tuple[str, str]:
    """Return ``(subject, html)`` for a notification."""
    template = EMAIL_TEMPLATES[NotificationKind(notification.kind)]
    return template(user, notification, vehicle, approval, cfg)


# ---------- Senders ----------
class SmtpEmailSender:
    def __init__(self, cfg: Settings = default_settings):
        self.cfg = cfg

    def send(self, to_address: str, subject: str, body: str) -> None:
        if not self.cfg.EMAIL_USER:
            raise EmailError("Email transport not configured (EMAIL_USER missing)")

        msg = EmailMessage()
        msg["From"] = f'"Vehicle Insurance System" <{self.cfg.EMAIL_USER}>'
        msg["To"] = to_address
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(body, subtype="html")

        try:
            with smtplib.SMTP(self.cfg.EMAIL_HOST, self.cfg.EMAIL_PORT, timeout=self.cfg.EMAIL_TIMEOUT_SECONDS) as smtp:
                smtp.starttls()
                smtp.login(self.cfg.EMAIL_USER, self.cfg.EMAIL_PASS)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailError(f"Failed to send email to {to_address}: {e}") from e
        logger.info(f"Email sent to {to_address}: {subject}")


class FirebasePushSender:
    def __init__(self, cfg: Settings = default_settings):
        self.cfg = cfg

    @property
    def enabled(self) -> bool:
        return self.cfg.push_configured

    def _app(self):
        try:
            return firebase_admin.get_app()
        except ValueError:
            cred = credentials.Certificate({
                "type": "service_account",
                "project_id": self.cfg.FIREBASE_PROJECT_ID,
                "private_key": self.cfg.FIREBASE_PRIVATE_KEY.replace("\\n", "\n"),
                "client_email": self.cfg.FIREBASE_CLIENT_EMAIL,
                "token_uri": "https://oauth2.googleapis.com/token",
            })
            return firebase_admin.initialize_app(cred)

    def send(self, token: str, title: str, body: str) -> None:
        msg = messaging.Message(
            token=token,
            notification=messaging.Notification(
                title=title,
                body=body,
            ),
        )
        messaging.send(msg, app=self._app())


# ---------- Sink ----------
class NotificationSink:
    """Persists notifications and pushes them out by email (and push when possible)."""

    def __init__(self, email_sender=None, push_sender=None, cfg: Settings = default_settings):
        self.email_sender = email_sender
        self.push_sender = push_sender
        self.cfg = cfg

    def create(
        self,
        session: Session,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType,
        kind: NotificationKind = NotificationKind.general,
        metadata: Optional[Dict[str, Any]] = None,
        reminder_kind: Optional[str] = None,
        reminder_source_date: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> Notification:
        """Add a notification to the session and flush it; the caller commits."""
        notification = Notification(
            user_id=user_id,
            title=title[:100],
            message=message[:500],
            type=type,
            kind=kind,
            meta=metadata or {},
            reminder_kind=reminder_kind,
            reminder_source_date=reminder_source_date,
            created_at=created_at or utcnow(),
        )
        session.add(notification)
        session.flush()
        return notification

    def deliver(
        self,
        session: Session,
        notification: Notification,
        user: User,
        vehicle: Optional[Vehicle] = None,
        approval: Optional[InsuranceApproval] = None,
    ) -> bool:
        """Send an already persisted notification. Returns whether the email went out.

        Failures are logged and leave ``email_sent`` False; they never raise.
        """
        self._push(notification, user)

        if self.email_sender is None or not user.email:
            return False
        try:
            subject, html = render_email(user, notification, vehicle, approval, self.cfg)
            self.email_sender.send(user.email, subject, html)
        except Exception as e:
            logger.error(f"Failed to email notification {notification.id} to {user.email}: {e}")
            return False

        session.exec(
            update(Notification)
            .where(Notification.id == notification.id)
            .values(email_sent=True)
        )
        session.commit()
        return True

    def notify(
        self,
        session: Session,
        user: User,
        title: str,
        message: str,
        type: NotificationType,
        kind: NotificationKind = NotificationKind.general,
        metadata: Optional[Dict[str, Any]] = None,
        vehicle: Optional[Vehicle] = None,
        approval: Optional[InsuranceApproval] = None,
    ) -> Notification:
        """Create, commit and deliver in one step."""
        notification = self.create(session, user.id, title, message, type, kind, metadata)
        session.commit()
        self.deliver(session, notification, user, vehicle, approval)
        return notification

    def _push(self, notification: Notification, user: User) -> None:
        if self.push_sender is None or not user.device_token:
            return
        if not getattr(self.push_sender, "enabled", True):
            return
        try:
            self.push_sender.send(user.device_token, notification.title, notification.message)
        except Exception as e:
            logger.warning(f"Push to user {user.id} failed: {e}")


# ---------- Inbox ----------
def list_notifications(
    session: Session,
    user_id: int,
    seen: Optional[bool] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Notification]:
    statement = select(Notification).where(Notification.user_id == user_id)
    if seen is not None:
        statement = statement.where(Notification.is_seen == seen)
    statement = statement.order_by(Notification.created_at.desc(), Notification.id.desc())
    return list(session.exec(statement.offset(offset).limit(limit)).all())


def mark_seen(session: Session, notification_id: int, user_id: int) -> Notification:
    notification = session.get(Notification, notification_id)
    if not notification or notification.user_id != user_id:
        raise NotFound("Notification not found or unauthorized")
    if notification.is_seen:
        raise ConflictError("Notification already seen")
    notification.is_seen = True
    notification.seen_at = utcnow()
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification


def mark_all_seen(session: Session, user_id: int) -> int:
    result = session.exec(
        update(Notification)
        .where(Notification.user_id == user_id)
        .where(Notification.is_seen.is_(False))
        .values(is_seen=True, seen_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount


def unseen_count(session: Session, user_id: int) -> int:
    statement = (
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id)
        .where(Notification.is_seen.is_(False))
    )
    return session.exec(statement).one()
