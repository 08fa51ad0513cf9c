from dateutil.relativedelta import relativedelta
import pytest
from sqlmodel import select

import purchase_service
from db import AdminNotification, EmailLog, Purchase, UserSubscription, utcnow
from errors import AccessDenied, Conflict, InvalidInput, NotFound


def test_create_purchase_notifies_admin(session, make_user):
    user = make_user(first_name="Grace", last_name="Hopper")
    purchase = purchase_service.create_purchase(session, user.id, "pro", "Pro", 199, "paypal", transaction_id="PP-1")

    assert purchase.payment_status == "completed"
    assert purchase.currency == "USD"
    assert purchase.completed_at is not None

    note = session.exec(select(AdminNotification).where(AdminNotification.notification_type == "purchase")).one()
    assert note.title == "New Purchase: Pro"
    assert note.message == f"User {user.email} purchased Pro for $199.00"
    assert note.related_purchase_id == purchase.id
    assert note.details == {
        "user_email": user.email,
        "user_name": "Grace Hopper",
        "plan_name": "Pro",
        "amount": "199.00",
        "payment_method": "paypal",
    }
    assert not note.is_read


def test_create_purchase_rejects_unknown_method(session, make_user):
    user = make_user()
    with pytest.raises(InvalidInput):
        purchase_service.create_purchase(session, user.id, "pro", "Pro", 199, "cheque")


def test_activate_subscription_runs_one_month(session, make_user):
    user = make_user(plan_type="starter")
    sub = purchase_service.activate_subscription(session, user.id, "starter")
    assert sub.status == "active"
    assert sub.expires_at == sub.started_at + relativedelta(months=1)


def test_enterprise_runs_three_months(session, make_user):
    user = make_user(plan_type="enterprise")
    sub = purchase_service.activate_subscription(session, user.id, "enterprise")
    assert sub.expires_at == sub.started_at + relativedelta(months=3)


def test_activating_another_plan_keeps_a_single_active_subscription(session, make_user):
    user = make_user(plan_type="starter")
    first = purchase_service.activate_subscription(session, user.id, "starter")
    second = purchase_service.activate_subscription(session, user.id, "pro")

    session.refresh(first)
    assert first.status == "cancelled"
    assert second.status == "active"
    assert second.plan_name == "Pro"
    active = session.exec(
        select(UserSubscription).where(UserSubscription.user_id == user.id, UserSubscription.status == "active")
    ).all()
    assert [s.id for s in active] == [second.id]


def test_process_purchase_and_notify(session, make_user):
    user = make_user(plan_type="pro")
    purchase = purchase_service.process_purchase_and_notify(session, user, "pro", "crypto", transaction_id="0xabc")

    assert purchase.amount == 199
    sub = session.exec(select(UserSubscription).where(UserSubscription.user_id == user.id)).one()
    assert sub.status == "active"
    email = session.exec(select(EmailLog).where(EmailLog.email_type == "payment_confirmation")).one()
    assert email.email_to == user.email
    assert "0xabc" in email.body


def test_process_purchase_is_idempotent_per_transaction(session, make_user):
    user = make_user()
    first = purchase_service.process_purchase_and_notify(session, user, "starter", "stripe", transaction_id="cs_1")
    again = purchase_service.process_purchase_and_notify(session, user, "starter", "stripe", transaction_id="cs_1")
    assert first.id == again.id
    assert len(session.exec(select(Purchase)).all()) == 1


def test_manual_payment_waits_for_confirmation(session, make_user):
    admin = make_user(role="admin")
    user = make_user(plan_type="pro")
    purchase = purchase_service.submit_manual_payment(session, user, "pro", "paypal", " PP-42 ")
    assert purchase.payment_status == "pending"
    assert purchase.transaction_id == "PP-42"
    assert session.exec(select(UserSubscription).where(UserSubscription.status == "active")).first() is None

    with pytest.raises(AccessDenied):
        purchase_service.confirm_purchase(session, user, purchase.id)

    confirmed = purchase_service.confirm_purchase(session, admin, purchase.id)
    assert confirmed.payment_status == "completed"
    assert session.exec(select(UserSubscription).where(UserSubscription.status == "active")).one().user_id == user.id

    with pytest.raises(InvalidInput):
        purchase_service.confirm_purchase(session, admin, purchase.id)


def test_manual_payment_needs_reference(session, make_user):
    user = make_user()
    with pytest.raises(InvalidInput):
        purchase_service.submit_manual_payment(session, user, "pro", "crypto", "  ")
    with pytest.raises(InvalidInput):
        purchase_service.submit_manual_payment(session, user, "pro", "stripe", "ref")


def test_reject_purchase(session, make_user):
    admin = make_user(role="admin")
    user = make_user()
    purchase = purchase_service.submit_manual_payment(session, user, "pro", "crypto", "0xdead")
    assert purchase_service.reject_purchase(session, admin, purchase.id).payment_status == "failed"


def test_admin_notifications_newest_first_with_user(session, make_user):
    admin = make_user(role="admin")
    user = make_user(first_name="Alan", last_name="Turing")
    purchase_service.create_purchase(session, user.id, "pro", "Pro", 199, "crypto")

    notes = purchase_service.get_admin_notifications(session, admin)
    assert [n["notification_type"] for n in notes] == ["purchase", "signup"]
    assert notes[0]["user"] == {"email": user.email, "first_name": "Alan", "last_name": "Turing"}
    assert notes[0]["metadata"]["plan_name"] == "Pro"


def test_mark_read_hides_notification_unless_include_read(session, make_user):
    admin = make_user(role="admin")
    make_user()
    note = purchase_service.get_admin_notifications(session, admin)[0]

    purchase_service.mark_notification_as_read(session, admin, note["id"])
    assert purchase_service.get_admin_notifications(session, admin) == []
    assert purchase_service.get_admin_notifications(session, admin, include_read=True)[0]["is_read"]

    with pytest.raises(NotFound):
        purchase_service.mark_notification_as_read(session, admin, 9999)


@pytest.mark.parametrize("role", ["user", "customer_service"])
def test_notifications_are_admin_only(session, make_user, role):
    actor = make_user(role=role)
    with pytest.raises(AccessDenied):
        purchase_service.get_admin_notifications(session, actor)


def test_purchases_visible_to_owner_and_staff_only(session, make_user):
    owner = make_user()
    other = make_user()
    agent = make_user(role="customer_service")
    purchase_service.create_purchase(session, owner.id, "pro", "Pro", 199, "crypto")

    assert len(purchase_service.get_user_purchases(session, owner, owner.id)) == 1
    assert len(purchase_service.get_user_purchases(session, agent, owner.id)) == 1
    with pytest.raises(AccessDenied):
        purchase_service.get_user_purchases(session, other, owner.id)


def test_stripe_checkout_completed_event_activates_plan(session, make_user):
    user = make_user(plan_type="enterprise")
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_status": "paid",
                "amount_total": 49900,
                "customer": "cus_1",
                "metadata": {"user_id": str(user.id), "plan_type": "enterprise"},
            }
        },
    }
    purchase = purchase_service.handle_stripe_event(session, event)
    assert purchase.payment_method == "stripe"
    assert purchase.amount == 499
    assert purchase.transaction_id == "cs_test_1"

    assert purchase_service.handle_stripe_event(session, event).id == purchase.id
    assert purchase_service.handle_stripe_event(session, {"type": "invoice.paid", "data": {"object": {}}}) is None


def test_stripe_checkout_requires_configuration(session, make_user, monkeypatch):
    monkeypatch.setattr(purchase_service, "STRIPE_SECRET_KEY", "")
    with pytest.raises(InvalidInput):
        purchase_service.create_stripe_checkout(session, make_user(), "pro")


def test_free_plan_refuses_paid_plan_name(session, make_user):
    user = make_user()
    with pytest.raises(InvalidInput):
        purchase_service.activate_free_plan(session, user, "pro")


def test_free_plan_allowed_after_paid_plan_lapses(session, make_user):
    user = make_user(plan_type="starter")
    paid = purchase_service.activate_subscription(session, user.id, "starter")
    paid.expires_at = utcnow() - relativedelta(days=1)
    session.add(paid)
    session.commit()

    sub = purchase_service.activate_free_plan(session, user, "kickstarter")
    assert sub.plan_type == "kickstarter"
    assert sub.status == "active"
    session.refresh(paid)
    assert paid.status == "cancelled"

    with pytest.raises(Conflict):
        purchase_service.activate_free_plan(session, user, "kickstarter")
