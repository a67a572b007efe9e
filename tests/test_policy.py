from datetime import timedelta

import pytest
from sqlmodel import select

from conftest import reminder_schedule_consistent
from errors import ConflictError, NotFound, ValidationError
from models import (
    AccountStatus,
    InsuranceApproval,
    Notification,
    NotificationType,
    PaymentStatus,
    UserRole,
)
from policy import (
    PolicyService,
    all_vehicles,
    find_by_registration,
    normalize_registration,
    renewal_queue,
    vehicles_for_customer,
    vehicles_owned_by,
)


@pytest.fixture
def service(sink):
    return PolicyService(sink)


@pytest.fixture
def staff(make_user):
    return make_user(role=UserRole.staff)


def titles_for(session, user):
    session.expire_all()
    statement = select(Notification).where(Notification.user_id == user.id).order_by(Notification.id)
    return [n.title for n in session.exec(statement).all()]


def test_normalize_registration():
    assert normalize_registration("  mh04ab1234 ") == "MH04AB1234"
    assert normalize_registration(None) == ""


# ---------- register ----------
def test_register_vehicle(service, session, make_user, staff):
    owner = make_user()

    vehicle = service.register_vehicle(session, owner.id, "mh04ab1234", "Swift", created_by=staff.id)

    assert vehicle.registration_number == "MH04AB1234"
    assert vehicle.payment_status == PaymentStatus.pending
    assert vehicle.activation_reminder_scheduled_at is None
    assert find_by_registration(session, "Mh04Ab1234").id == vehicle.id
    assert titles_for(session, owner) == []


def test_register_with_amount_notifies_owner(service, session, make_user, email_sender):
    owner = make_user()

    vehicle = service.register_vehicle(session, owner.id, "MH04AB1235", "City", insurance_amount=12000)

    assert vehicle.insurance_amount == 12000
    assert titles_for(session, owner) == ["Insurance Amount Set"]
    assert email_sender.subjects_to(owner.email) == ["Insurance Amount Set - MH04AB1235"]


def test_duplicate_registration(service, session, make_user):
    owner = make_user()
    service.register_vehicle(session, owner.id, "MH04AB1236", "City")

    with pytest.raises(ConflictError):
        service.register_vehicle(session, owner.id, " mh04ab1236", "Verna")


@pytest.mark.parametrize("amount", [-1, "abc", float("nan")])
def test_register_rejects_bad_amount(service, session, make_user, amount):
    owner = make_user()
    with pytest.raises(ValidationError):
        service.register_vehicle(session, owner.id, "MH04AB1237", "City", insurance_amount=amount)


def test_register_for_unknown_owner(service, session):
    with pytest.raises(NotFound):
        service.register_vehicle(session, 777, "MH04AB1238", "City")


# ---------- insurance dates ----------
def test_setting_dates_schedules_all_reminders(service, session, make_user, make_vehicle, staff, now):
    owner = make_user()
    vehicle = make_vehicle(owner)
    start = now + timedelta(days=1)
    expiry = now + timedelta(days=366)

    updated = service.set_insurance_dates(session, vehicle.id, start, expiry, staff.id, now=now)

    assert updated.start_date == start
    assert updated.expiry_date == expiry
    assert updated.insurance_set_by == staff.id
    assert updated.activation_reminder_scheduled_at == start + timedelta(hours=24)
    assert updated.month_reminder_scheduled_at == start + timedelta(days=30)
    assert updated.pre_expiry_reminder_scheduled_at == expiry - timedelta(hours=24)
    assert not updated.activation_reminder_sent
    assert reminder_schedule_consistent(updated)
    assert titles_for(session, owner) == ["Insurance Dates Set"]


def test_changing_dates_keeps_existing_due_times(service, session, make_user, make_vehicle, staff, now):
    owner = make_user()
    vehicle = make_vehicle(owner)
    service.set_insurance_dates(session, vehicle.id, now, now + timedelta(days=365), staff.id, now=now)
    session.refresh(vehicle)
    first_activation = vehicle.activation_reminder_scheduled_at
    first_pre_expiry = vehicle.pre_expiry_reminder_scheduled_at

    updated = service.set_insurance_dates(
        session, vehicle.id, now + timedelta(days=10), now + timedelta(days=400), staff.id, now=now
    )

    assert updated.activation_reminder_scheduled_at == first_activation
    assert updated.pre_expiry_reminder_scheduled_at == first_pre_expiry
    assert titles_for(session, owner) == ["Insurance Dates Set", "Insurance Dates Updated"]


@pytest.mark.parametrize(
    "start_offset, expiry_offset",
    [
        (timedelta(days=10), timedelta(days=5)),
        (timedelta(days=10), timedelta(days=10)),
        (timedelta(days=-30), timedelta(days=-1)),
    ],
)
def test_invalid_date_ranges(service, session, make_user, make_vehicle, staff, now, start_offset, expiry_offset):
    owner = make_user()
    vehicle = make_vehicle(owner)

    with pytest.raises(ValidationError):
        service.set_insurance_dates(session, vehicle.id, now + start_offset, now + expiry_offset, staff.id, now=now)

    session.refresh(vehicle)
    assert vehicle.start_date is None
    assert vehicle.activation_reminder_scheduled_at is None


def test_missing_dates(service, session, make_user, make_vehicle, staff, now):
    vehicle = make_vehicle(make_user())
    with pytest.raises(ValidationError):
        service.set_insurance_dates(session, vehicle.id, None, now + timedelta(days=10), staff.id)


def test_dates_for_unknown_vehicle(service, session, staff, now):
    with pytest.raises(NotFound):
        service.set_insurance_dates(session, 31337, now, now + timedelta(days=10), staff.id, now=now)


def test_amount_change_with_dates_sends_both_notifications(
    service, session, make_user, make_vehicle, staff, now
):
    owner = make_user()
    vehicle = make_vehicle(owner, insurance_amount=8000)

    updated = service.set_insurance_dates(
        session, vehicle.id, now, now + timedelta(days=365), staff.id, insurance_amount=9500, now=now
    )

    assert updated.insurance_amount == 9500
    assert titles_for(session, owner) == ["Insurance Dates Set", "Insurance Amount Updated"]


def test_unchanged_amount_sends_no_amount_notification(service, session, make_user, make_vehicle, staff, now):
    owner = make_user()
    vehicle = make_vehicle(owner, insurance_amount=8000)

    service.set_insurance_dates(
        session, vehicle.id, now, now + timedelta(days=365), staff.id, insurance_amount=8000, now=now
    )

    assert titles_for(session, owner) == ["Insurance Dates Set"]


def test_notification_failure_does_not_undo_dates(service, session, make_user, make_vehicle, staff, sink, monkeypatch, now):
    owner = make_user()
    vehicle = make_vehicle(owner)

    def broken_notify(*args, **kwargs):
        raise RuntimeError("notification store down")

    monkeypatch.setattr(sink, "notify", broken_notify)

    updated = service.set_insurance_dates(session, vehicle.id, now, now + timedelta(days=365), staff.id, now=now)

    assert updated.expiry_date == now + timedelta(days=365)
    assert updated.activation_reminder_scheduled_at is not None


def test_dates_notification_is_an_update(service, session, make_user, make_vehicle, staff, now):
    owner = make_user()
    vehicle = make_vehicle(owner)
    service.set_insurance_dates(session, vehicle.id, now, now + timedelta(days=365), staff.id, now=now)

    [note] = session.exec(select(Notification).where(Notification.user_id == owner.id)).all()
    assert note.type == NotificationType.update
    assert note.meta["vehicleId"] == vehicle.id


# ---------- renewal queue ----------
def test_renewal_queue(session, make_user, make_vehicle, now):
    active = make_user()
    banned = make_user(status=AccountStatus.banned)
    start = now - timedelta(days=300)
    tomorrow = make_vehicle(active, start_date=start, expiry_date=now + timedelta(hours=20))
    next_week = make_vehicle(active, start_date=start, expiry_date=now + timedelta(days=5))
    this_month = make_vehicle(active, start_date=start, expiry_date=now + timedelta(days=25))
    make_vehicle(active, start_date=start, expiry_date=now + timedelta(days=90))
    make_vehicle(active, start_date=start, expiry_date=now - timedelta(days=1))
    make_vehicle(banned, start_date=start, expiry_date=now + timedelta(days=3))

    queue = renewal_queue(session, now=now)

    assert [entry["vehicle"].id for entry in queue] == [tomorrow.id, next_week.id, this_month.id]
    assert [entry["days_category"] for entry in queue] == ["1 Day", "7 Days", "30 Days"]
    assert queue[0]["days_until_expiry"] == 1
    assert queue[0]["owner"].id == active.id


# ---------- vehicle edits ----------
def test_owner_edits_registration_and_model(service, session, make_user, make_vehicle):
    owner = make_user()
    vehicle = make_vehicle(owner, registration_number="MH04AB2000")

    updated = service.update_vehicle(
        session, vehicle.id, owner, {"registration_number": " mh04ab2001 ", "model": " Baleno "}
    )

    assert updated.registration_number == "MH04AB2001"
    assert updated.model == "Baleno"
    assert find_by_registration(session, "MH04AB2000") is None
    assert titles_for(session, owner) == []


def test_owner_cannot_edit_staff_fields(service, session, make_user, make_vehicle):
    owner = make_user()
    vehicle = make_vehicle(owner)

    with pytest.raises(ValidationError):
        service.update_vehicle(session, vehicle.id, owner, {"insurance_amount": 100})
    with pytest.raises(ValidationError):
        service.update_vehicle(session, vehicle.id, owner, {"chassis_number": "ABC123"})

    session.refresh(vehicle)
    assert vehicle.insurance_amount is None
    assert vehicle.chassis_number is None


def test_other_customer_cannot_edit(service, session, make_user, make_vehicle):
    vehicle = make_vehicle(make_user())
    stranger = make_user()

    with pytest.raises(NotFound):
        service.update_vehicle(session, vehicle.id, stranger, {"model": "Stolen"})
    with pytest.raises(NotFound):
        service.update_vehicle(session, 4040, stranger, {"model": "Nothing"})


def test_unknown_fields_are_refused(service, session, make_user, make_vehicle, staff):
    vehicle = make_vehicle(make_user())

    with pytest.raises(ValidationError):
        service.update_vehicle(session, vehicle.id, staff, {"payment_status": "paid"})


def test_staff_edit_amount_notifies_owner(service, session, make_user, make_vehicle, staff, email_sender):
    owner = make_user()
    vehicle = make_vehicle(owner, insurance_amount=5000)

    updated = service.update_vehicle(
        session,
        vehicle.id,
        staff,
        {"insurance_amount": 6500, "chassis_number": " abc123 ", "insurance_policy": "POL-9"},
    )

    assert updated.insurance_amount == 6500
    assert updated.chassis_number == "ABC123"
    assert updated.insurance_policy == "POL-9"
    assert titles_for(session, owner) == ["Insurance Amount Updated"]
    assert email_sender.subjects_to(owner.email) == [f"Insurance Amount Updated - {vehicle.registration_number}"]


def test_edit_keeps_registration_and_chassis_unique(service, session, make_user, make_vehicle, staff):
    owner = make_user()
    first = make_vehicle(owner, registration_number="MH04AB3000")
    second = make_vehicle(owner, registration_number="MH04AB3001")
    service.update_vehicle(session, first.id, staff, {"chassis_number": "CH-1"})

    with pytest.raises(ConflictError):
        service.update_vehicle(session, second.id, staff, {"registration_number": "mh04ab3000"})
    with pytest.raises(ConflictError):
        service.update_vehicle(session, second.id, staff, {"chassis_number": "ch-1"})
    with pytest.raises(ValidationError):
        service.update_vehicle(session, second.id, staff, {"registration_number": "  "})
    with pytest.raises(ValidationError):
        service.update_vehicle(session, second.id, staff, {"model": ""})


def test_registration_change_follows_approval_record(service, session, make_user, make_vehicle, staff):
    owner = make_user()
    vehicle = make_vehicle(owner, registration_number="MH04AB4000")
    session.add(InsuranceApproval(registration_number="MH04AB4000", customer_name=owner.name))
    session.commit()

    service.update_vehicle(session, vehicle.id, staff, {"registration_number": "MH04AB4001"})

    [approval] = session.exec(select(InsuranceApproval)).all()
    assert approval.registration_number == "MH04AB4001"


# ---------- listings ----------
def test_vehicles_owned_by_pages_newest_first(session, make_user, make_vehicle):
    owner = make_user()
    other = make_user()
    vehicles = [make_vehicle(owner) for _ in range(3)]
    make_vehicle(other)

    page, total = vehicles_owned_by(session, owner.id, limit=2)
    rest, _ = vehicles_owned_by(session, owner.id, limit=2, offset=2)

    assert total == 3
    assert [v.id for v in page + rest] == [v.id for v in reversed(vehicles)]


def test_vehicles_owned_by_search(session, make_user, make_vehicle):
    owner = make_user()
    match = make_vehicle(owner, registration_number="KA01ZZ9999")
    make_vehicle(owner)

    found, total = vehicles_owned_by(session, owner.id, search="zz99")

    assert total == 1
    assert [v.id for v in found] == [match.id]


def test_all_vehicles_filters(session, make_user, make_vehicle):
    first = make_user()
    second = make_user()
    a = make_vehicle(first, registration_number="DL01AA0001")
    b = make_vehicle(second, registration_number="DL02BB0002")
    b.chassis_number = "CHS777"
    session.add(b)
    session.commit()

    assert all_vehicles(session)[1] == 2
    assert [v.id for v in all_vehicles(session, registration_number="dl01")[0]] == [a.id]
    assert [v.id for v in all_vehicles(session, chassis_number="s77")[0]] == [b.id]
    assert [v.id for v in all_vehicles(session, customer_id=second.id)[0]] == [b.id]
    assert [v.id for v in all_vehicles(session, search="chs")[0]] == [b.id]
    assert all_vehicles(session, search="nothing-like-this") == ([], 0)


def test_vehicles_for_customer(session, make_user, make_vehicle):
    owner = make_user()
    owned = [make_vehicle(owner), make_vehicle(owner)]
    make_vehicle(make_user())

    assert [v.id for v in vehicles_for_customer(session, owner.id)] == [owned[1].id, owned[0].id]
    assert vehicles_for_customer(session, 4040) == []
