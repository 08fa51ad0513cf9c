from sqlmodel import Session, func, or_, select

from db import EmailLog, Purchase, User, UserProfile, UserSignalAccess, UserSubscription
from errors import NotFound
from purchase_service import require_role

STAFF_ROLES = ("admin", "customer_service")


def search_customers(session: Session, actor: User, query: str = "", limit: int = 50):
    """Customers matching an email, name or member ID fragment, newest first."""
    require_role(actor, *STAFF_ROLES)
    stmt = (
        select(User, UserProfile)
        .join(UserProfile, UserProfile.user_id == User.id, isouter=True)
        .where(User.role == "user")
    )
    query = (query or "").strip().lower()
    if query:
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        stmt = stmt.where(
            or_(
                func.lower(User.email).like(pattern, escape="\\"),
                func.lower(User.first_name).like(pattern, escape="\\"),
                func.lower(User.last_name).like(pattern, escape="\\"),
                UserProfile.unique_id.like(pattern, escape="\\"),
            )
        )
    rows = session.exec(stmt.order_by(User.created_at.desc(), User.id.desc()).limit(limit)).all()
    customers = []
    for user, profile in rows:
        subscription = session.exec(
            select(UserSubscription)
            .where(UserSubscription.user_id == user.id)
            .order_by(UserSubscription.updated_at.desc())
        ).first()
        customers.append({"user": user, "profile": profile, "subscription": subscription})
    return customers


def get_customer_detail(session: Session, actor: User, user_id: int):
    require_role(actor, *STAFF_ROLES)
    user = session.get(User, user_id)
    if not user or user.role != "user":
        raise NotFound("Customer not found")
    return {
        "customer": user,
        "profile": session.exec(select(UserProfile).where(UserProfile.user_id == user_id)).first(),
        "subscriptions": session.exec(
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .order_by(UserSubscription.created_at.desc())
        ).all(),
        "purchases": session.exec(
            select(Purchase).where(Purchase.user_id == user_id).order_by(Purchase.created_at.desc())
        ).all(),
        "emails": session.exec(
            select(EmailLog).where(EmailLog.user_id == user_id).order_by(EmailLog.created_at.desc()).limit(20)
        ).all(),
        "signals_viewed": session.exec(
            select(func.count()).select_from(UserSignalAccess).where(UserSignalAccess.user_id == user_id)
        ).one(),
    }


def set_customer_active(session: Session, actor: User, user_id: int, is_active: bool):
    require_role(actor, "admin")
    user = session.get(User, user_id)
    if not user or user.role != "user":
        raise NotFound("Customer not found")
    user.is_active = is_active
    session.add(user)
    session.commit()
    session.refresh(user)
    return user
