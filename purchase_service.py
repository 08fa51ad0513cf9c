import logging
import os

from dateutil.relativedelta import relativedelta
from sqlmodel import Session, select
import stripe

from auth_service import get_active_subscription
from db import PAYMENT_METHODS, AdminNotification, Purchase, User, UserSubscription, utcnow
from email_service import send_payment_success_email
from errors import AccessDenied, Conflict, InvalidInput, NotFound
from plans import PLANS, get_plan_details

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://127.0.0.1:8000").rstrip("/")

logger = logging.getLogger(__name__)


def require_role(actor: User | None, *roles: str):
    if actor is None or actor.role not in roles:
        raise AccessDenied("You do not have access to this resource.")
    return actor


def create_purchase(
    session: Session,
    user_id: int,
    plan_type: str,
    plan_name: str,
    amount: float,
    payment_method: str,
    transaction_id: str | None = None,
    payment_details: dict | None = None,
    payment_status: str = "completed",
):
    """Insert a USD purchase; the insert hook notifies the admin console."""
    if payment_method not in PAYMENT_METHODS:
        raise InvalidInput("Unknown payment method.")
    if amount < 0:
        raise InvalidInput("Amount cannot be negative.")
    purchase = Purchase(
        user_id=user_id,
        plan_type=plan_type,
        plan_name=plan_name,
        amount=float(amount),
        currency="USD",
        payment_method=payment_method,
        payment_status=payment_status,
        transaction_id=transaction_id,
        payment_details=payment_details,
        completed_at=utcnow() if payment_status == "completed" else None,
    )
    session.add(purchase)
    session.commit()
    session.refresh(purchase)
    logger.info("Purchase %s recorded for user %s (%s)", purchase.id, user_id, payment_status)
    return purchase


def activate_subscription(session: Session, user_id: int, plan_type: str):
    """Make ``plan_type`` the user's single active subscription.

    Runs for one calendar month, three for Enterprise. A missing row for the
    plan is created; any other active subscription is cancelled.
    """
    plan = get_plan_details(plan_type)
    subscription = session.exec(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id, UserSubscription.plan_type == plan["plan_type"])
        .order_by(UserSubscription.created_at.desc())
    ).first()
    if not subscription:
        subscription = UserSubscription(
            user_id=user_id,
            plan_type=plan["plan_type"],
            plan_name=plan["name"],
            price=plan["price"],
            period=plan["period"],
            features=list(plan["features"]),
        )
        session.add(subscription)
        session.flush()

    others = session.exec(
        select(UserSubscription).where(
            UserSubscription.user_id == user_id,
            UserSubscription.status == "active",
            UserSubscription.id != subscription.id,
        )
    ).all()
    for other in others:
        other.status = "cancelled"
        session.add(other)

    now = utcnow()
    subscription.status = "active"
    subscription.started_at = now
    subscription.expires_at = now + relativedelta(months=plan["months"])
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    logger.info("Subscription %s (%s) active for user %s until %s", subscription.id, plan["plan_type"], user_id, subscription.expires_at)
    return subscription


def activate_free_plan(session: Session, user: User, plan_type: str):
    """Start a free plan once per customer, never over a running paid plan."""
    plan = get_plan_details(plan_type)
    if plan["price"] != 0:
        raise InvalidInput(f"{plan['name']} is not a free plan.")
    current = get_active_subscription(session, user.id)
    if current and current.price > 0 and current.expires_at and current.expires_at > utcnow():
        raise Conflict(f"Your {current.plan_name} plan is still active until {current.expires_at:%Y-%m-%d}.")
    used = session.exec(
        select(UserSubscription).where(
            UserSubscription.user_id == user.id,
            UserSubscription.plan_type == plan["plan_type"],
            UserSubscription.started_at != None,  # noqa: E711
        )
    ).first()
    if used:
        raise Conflict(f"The {plan['name']} plan can only be used once.")
    return activate_subscription(session, user.id, plan["plan_type"])


def process_purchase_and_notify(
    session: Session,
    user: User,
    plan_type: str,
    payment_method: str,
    transaction_id: str | None = None,
    payment_details: dict | None = None,
    amount: float | None = None,
):
    plan = get_plan_details(plan_type)
    if transaction_id:
        existing = session.exec(
            select(Purchase).where(Purchase.transaction_id == transaction_id, Purchase.payment_method == payment_method)
        ).first()
        if existing:
            logger.info("Purchase for transaction %s already processed", transaction_id)
            return existing

    purchase = create_purchase(
        session,
        user.id,
        plan["plan_type"],
        plan["name"],
        plan["price"] if amount is None else amount,
        payment_method,
        transaction_id=transaction_id,
        payment_details=payment_details,
    )
    activate_subscription(session, user.id, plan["plan_type"])
    send_payment_success_email(
        session,
        user.email,
        user.full_name,
        purchase.amount,
        purchase.plan_name,
        transaction_id or "N/A",
        user.id,
        plan["features"],
    )
    return purchase


def submit_manual_payment(session: Session, user: User, plan_type: str, payment_method: str, transaction_id: str):
    """PayPal and crypto payments wait as pending until staff confirm them."""
    if payment_method not in ("paypal", "crypto"):
        raise InvalidInput("Only PayPal and crypto payments are confirmed manually.")
    transaction_id = (transaction_id or "").strip()
    if not transaction_id or len(transaction_id) > 200:
        raise InvalidInput("Please enter the transaction reference.")
    plan = get_plan_details(plan_type)
    return create_purchase(
        session,
        user.id,
        plan["plan_type"],
        plan["name"],
        plan["price"],
        payment_method,
        transaction_id=transaction_id,
        payment_status="pending",
    )


def confirm_purchase(session: Session, actor: User, purchase_id: int):
    require_role(actor, "admin")
    purchase = session.get(Purchase, purchase_id)
    if not purchase:
        raise NotFound("Purchase not found")
    if purchase.payment_status != "pending":
        raise InvalidInput(f"Purchase is already {purchase.payment_status}.")
    user = session.get(User, purchase.user_id)
    if not user:
        raise NotFound("User not found")
    purchase.payment_status = "completed"
    purchase.completed_at = utcnow()
    session.add(purchase)
    session.commit()
    activate_subscription(session, user.id, purchase.plan_type)
    plan = get_plan_details(purchase.plan_type)
    send_payment_success_email(
        session,
        user.email,
        user.full_name,
        purchase.amount,
        purchase.plan_name,
        purchase.transaction_id or "N/A",
        user.id,
        plan["features"],
    )
    logger.info("Purchase %s confirmed by admin %s", purchase.id, actor.id)
    return purchase


def reject_purchase(session: Session, actor: User, purchase_id: int):
    require_role(actor, "admin")
    purchase = session.get(Purchase, purchase_id)
    if not purchase:
        raise NotFound("Purchase not found")
    if purchase.payment_status != "pending":
        raise InvalidInput(f"Purchase is already {purchase.payment_status}.")
    purchase.payment_status = "failed"
    session.add(purchase)
    session.commit()
    return purchase


def get_admin_notifications(session: Session, actor: User, include_read: bool = False):
    require_role(actor, "admin")
    query = (
        select(AdminNotification, User)
        .join(User, AdminNotification.related_user_id == User.id, isouter=True)
        .order_by(AdminNotification.created_at.desc(), AdminNotification.id.desc())
    )
    if not include_read:
        query = query.where(AdminNotification.is_read == False)  # noqa: E712
    rows = session.exec(query).all()
    notifications = []
    for notification, user in rows:
        item = notification.model_dump()
        item["metadata"] = item.pop("details") or {}
        item["user"] = (
            {"email": user.email, "first_name": user.first_name, "last_name": user.last_name} if user else None
        )
        notifications.append(item)
    return notifications


def mark_notification_as_read(session: Session, actor: User, notification_id: int):
    require_role(actor, "admin")
    notification = session.get(AdminNotification, notification_id)
    if not notification:
        raise NotFound("Notification not found")
    notification.is_read = True
    session.add(notification)
    session.commit()
    return notification


def get_user_purchases(session: Session, actor: User, user_id: int):
    if actor is None or (actor.id != user_id and actor.role not in ("admin", "customer_service")):
        raise AccessDenied("You do not have access to these purchases.")
    return session.exec(
        select(Purchase).where(Purchase.user_id == user_id).order_by(Purchase.created_at.desc())
    ).all()


def get_recent_purchases(session: Session, actor: User, limit: int = 20):
    require_role(actor, "admin")
    return session.exec(select(Purchase).order_by(Purchase.created_at.desc()).limit(limit)).all()


def create_stripe_checkout(session: Session, user: User, plan_type: str):
    if not STRIPE_SECRET_KEY:
        raise InvalidInput("Stripe is not configured.")
    plan = get_plan_details(plan_type)
    stripe.api_key = STRIPE_SECRET_KEY

    customer_id = user.stripe_customer_id
    if not customer_id:
        customer = stripe.Customer.create(email=user.email, name=user.full_name)
        customer_id = customer["id"]
        user.stripe_customer_id = customer_id
        session.add(user)
        session.commit()

    checkout_session = stripe.checkout.Session.create(
        customer=customer_id,
        mode="payment",
        client_reference_id=str(user.id),
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "unit_amount": int(round(plan["price"] * 100)),
                    "product_data": {"name": f"{plan['name']} plan ({plan['period']})"},
                },
                "quantity": 1,
            }
        ],
        metadata={"user_id": str(user.id), "plan_type": plan["plan_type"]},
        success_url=f"{APP_BASE_URL}/successful-payment?plan={plan['plan_type']}",
        cancel_url=f"{APP_BASE_URL}/payment-flow?plan={plan['plan_type']}&canceled=1",
    )
    logger.info("Stripe checkout session created for user %s plan %s", user.id, plan["plan_type"])
    return checkout_session


def handle_stripe_event(session: Session, event: dict):
    """Apply a verified Stripe webhook event; returns the purchase it produced, if any."""
    if event.get("type") != "checkout.session.completed":
        return None
    data = event.get("data", {}).get("object", {})
    if data.get("payment_status") not in (None, "paid"):
        logger.info("Stripe session %s not paid yet", data.get("id"))
        return None
    metadata = data.get("metadata") or {}
    try:
        user_id = int(metadata.get("user_id") or data.get("client_reference_id"))
    except (TypeError, ValueError):
        logger.warning("Stripe session %s has no user reference", data.get("id"))
        return None
    user = session.get(User, user_id)
    if not user:
        logger.warning("Stripe session %s references unknown user %s", data.get("id"), user_id)
        return None
    plan_type = metadata.get("plan_type")
    if plan_type not in PLANS:
        logger.warning("Stripe session %s has unknown plan %s", data.get("id"), plan_type)
        return None
    amount = data.get("amount_total")
    return process_purchase_and_notify(
        session,
        user,
        plan_type,
        "stripe",
        transaction_id=data.get("id"),
        payment_details={"customer": data.get("customer"), "payment_intent": data.get("payment_intent")},
        amount=amount / 100 if amount is not None else None,
    )
