import logging
import os
import secrets

from passlib.context import CryptContext
from sqlmodel import Session, select

from db import ACCOUNT_TYPES, RISK_TOLERANCES, User, UserProfile, UserSubscription
from email_service import send_welcome_email
from errors import AuthenticationFailed, Conflict, InvalidInput, NotFound
from plans import get_plan_details

STAFF_PINS = {
    "admin": os.getenv("ADMIN_MPIN", ""),
    "customer_service": os.getenv("CUSTOMER_SERVICE_MPIN", ""),
}

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = logging.getLogger(__name__)


def _new_unique_id(session: Session):
    for _ in range(20):
        candidate = str(100000 + secrets.randbelow(900000))
        taken = session.exec(select(UserProfile).where(UserProfile.unique_id == candidate)).first()
        if not taken:
            return candidate
    raise Conflict("Could not allocate a member ID. Please try again.")


def get_active_subscription(session: Session, user_id: int):
    return session.exec(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id, UserSubscription.status == "active")
        .order_by(UserSubscription.started_at.desc())
    ).first()


def sign_up(
    session: Session,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    plan_type: str | None = None,
    role: str = "user",
):
    email = (email or "").strip().lower()
    first_name = (first_name or "").strip()
    last_name = (last_name or "").strip()
    if not email or "@" not in email or len(email) > 120:
        raise InvalidInput("Please enter a valid email.")
    if len(password) < 8 or len(password) > 72:
        raise InvalidInput("Password must be 8–72 characters.")
    if not first_name or not last_name:
        raise InvalidInput("First and last name are required.")

    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise Conflict("Email already used.")

    user = User(
        email=email,
        password_hash=pwd_context.hash(password),
        first_name=first_name,
        last_name=last_name,
        role=role,
    )
    session.add(user)
    session.flush()

    profile = UserProfile(user_id=user.id, unique_id=_new_unique_id(session))
    session.add(profile)

    plan = get_plan_details(plan_type)
    if role == "user":
        session.add(
            UserSubscription(
                user_id=user.id,
                plan_type=plan["plan_type"],
                plan_name=plan["name"],
                price=plan["price"],
                period=plan["period"],
                status="pending",
                features=list(plan["features"]),
            )
        )
    session.commit()
    session.refresh(user)
    session.refresh(profile)
    logger.info("User %s signed up on plan %s", user.id, plan["plan_type"])

    if role == "user":
        send_welcome_email(session, user.id, user.email, user.first_name, profile.unique_id, plan["name"])

    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "unique_id": profile.unique_id,
        "plan_type": plan["plan_type"],
    }


def sign_in(session: Session, email: str, password: str):
    email = (email or "").strip().lower()
    if len(password) > 72:
        raise AuthenticationFailed("Invalid email or password")
    user = session.exec(select(User).where(User.email == email)).first()
    if not user or not pwd_context.verify(password, user.password_hash):
        raise AuthenticationFailed("Invalid email or password")
    if not user.is_active:
        raise AuthenticationFailed("Account is deactivated")
    return get_user_profile(session, user.id)


def get_user_profile(session: Session, user_id: int):
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    profile = session.exec(select(UserProfile).where(UserProfile.user_id == user_id)).first()
    return {
        "user": user,
        "profile": profile,
        "subscription": get_active_subscription(session, user_id),
    }


def update_profile(
    session: Session,
    user_id: int,
    phone: str = "",
    country: str = "",
    timezone: str = "UTC",
    account_type: str = "personal",
    risk_tolerance: str = "moderate",
):
    if account_type not in ACCOUNT_TYPES:
        raise InvalidInput("Unknown account type.")
    if risk_tolerance not in RISK_TOLERANCES:
        raise InvalidInput("Unknown risk tolerance.")
    profile = session.exec(select(UserProfile).where(UserProfile.user_id == user_id)).first()
    if not profile:
        raise NotFound("Profile not found")
    profile.phone = phone.strip() or None
    profile.country = country.strip() or None
    profile.timezone = timezone.strip() or "UTC"
    profile.account_type = account_type
    profile.risk_tolerance = risk_tolerance
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return profile


def complete_setup(session: Session, user_id: int):
    profile = session.exec(select(UserProfile).where(UserProfile.user_id == user_id)).first()
    if not profile:
        raise NotFound("Profile not found")
    profile.setup_complete = True
    session.add(profile)
    session.commit()
    return profile


def verify_staff_pin(role: str, pin: str):
    """Second step for the staff consoles; a role with no PIN configured is closed."""
    expected = STAFF_PINS.get(role, "")
    if not expected or not pin:
        return False
    return secrets.compare_digest(expected.encode(), pin.strip().encode())
