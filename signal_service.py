from datetime import timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from auth_service import get_active_subscription
from db import (
    SIGNAL_DIRECTIONS,
    SIGNAL_STATUSES,
    SIGNAL_TYPES,
    TradingSignal,
    User,
    UserSignalAccess,
    utcnow,
)
from errors import AccessDenied, InvalidInput, NotFound
from purchase_service import require_role

STAFF_ROLES = ("admin", "customer_service")

logger = logging.getLogger(__name__)


def _parse_price(value, label: str):
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{label} must be a number.")
    if price <= 0:
        raise InvalidInput(f"{label} must be positive.")
    return price


def _parse_confidence(value):
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        confidence = int(value)
    except (TypeError, ValueError):
        raise InvalidInput("Confidence must be a whole number.")
    if not 0 <= confidence <= 100:
        raise InvalidInput("Confidence must be between 0 and 100.")
    return confidence


def create_signal(
    session: Session,
    actor: User,
    symbol: str,
    timeframe: str,
    direction: str,
    entry_price,
    stop_loss,
    take_profit: str,
    signal_type: str = "crypto",
    currency_pair: str | None = None,
    pips_at_risk: str | None = None,
    confidence=None,
    analysis: str | None = None,
    ict_concepts: list[str] | None = None,
    expires_at=None,
):
    require_role(actor, "admin")
    symbol = (symbol or "").strip().upper()
    direction = (direction or "").strip().upper()
    timeframe = (timeframe or "").strip()
    take_profit = (take_profit or "").strip()
    if not symbol:
        raise InvalidInput("Symbol is required.")
    if not timeframe:
        raise InvalidInput("Timeframe is required.")
    if not take_profit:
        raise InvalidInput("Take profit is required.")
    if signal_type not in SIGNAL_TYPES:
        raise InvalidInput("Unknown signal type.")
    if direction not in SIGNAL_DIRECTIONS:
        raise InvalidInput("Direction must be BUY or SELL.")
    confidence = _parse_confidence(confidence)
    if expires_at is not None and expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)

    signal = TradingSignal(
        signal_type=signal_type,
        symbol=symbol,
        currency_pair=(currency_pair or "").strip() or None,
        timeframe=timeframe,
        direction=direction,
        entry_price=_parse_price(entry_price, "Entry price"),
        stop_loss=_parse_price(stop_loss, "Stop loss"),
        take_profit=take_profit,
        pips_at_risk=(pips_at_risk or "").strip() or None,
        confidence=confidence,
        analysis=(analysis or "").strip() or None,
        ict_concepts=[c.strip() for c in (ict_concepts or []) if c and c.strip()],
        status="active",
        created_by=actor.id,
        expires_at=expires_at,
    )
    session.add(signal)
    session.commit()
    session.refresh(signal)
    logger.info("Signal %s %s %s published by %s", signal.id, signal.direction, signal.symbol, actor.id)
    return signal


def check_user_signal_access(session: Session, user_id: int):
    """Return ``(has_access, subscription, message)`` for a user.

    A subscription found past its expiry is flipped to expired on the way.
    """
    user = session.get(User, user_id)
    if user and user.role in STAFF_ROLES:
        return True, None, "Staff access"

    subscription = get_active_subscription(session, user_id)
    if not subscription:
        return False, None, "No active subscription found"

    if subscription.expires_at is None or subscription.expires_at <= utcnow():
        subscription.status = "expired"
        session.add(subscription)
        session.commit()
        logger.info("Subscription %s for user %s expired", subscription.id, user_id)
        return False, subscription, "Subscription has expired"

    return True, subscription, None


def _require_access(session: Session, user_id: int | None):
    if user_id is None:
        return
    has_access, _, message = check_user_signal_access(session, user_id)
    if not has_access:
        raise AccessDenied(message)


def _active_query():
    now = utcnow()
    return (
        select(TradingSignal)
        .where(TradingSignal.status == "active")
        .where((TradingSignal.expires_at == None) | (TradingSignal.expires_at > now))  # noqa: E711
        .order_by(TradingSignal.created_at.desc(), TradingSignal.id.desc())
    )


def get_active_signals(session: Session, user_id: int | None = None):
    _require_access(session, user_id)
    return session.exec(_active_query()).all()


def get_signals_by_type(session: Session, signal_type: str, user_id: int | None = None):
    if signal_type not in SIGNAL_TYPES:
        raise InvalidInput("Unknown signal type.")
    _require_access(session, user_id)
    return session.exec(_active_query().where(TradingSignal.signal_type == signal_type)).all()


def get_all_signals(session: Session, actor: User, limit: int = 50):
    require_role(actor, *STAFF_ROLES)
    return session.exec(
        select(TradingSignal).order_by(TradingSignal.created_at.desc(), TradingSignal.id.desc()).limit(limit)
    ).all()


def update_signal_status(session: Session, actor: User, signal_id: int, status: str):
    require_role(actor, "admin")
    if status not in SIGNAL_STATUSES:
        raise InvalidInput("Unknown signal status.")
    signal = session.get(TradingSignal, signal_id)
    if not signal:
        raise NotFound("Signal not found")
    signal.status = status
    session.add(signal)
    session.commit()
    session.refresh(signal)
    logger.info("Signal %s set to %s by %s", signal_id, status, actor.id)
    return signal


def track_signal_view(session: Session, user_id: int, signal_id: int):
    """Record the first view of a signal; repeat views return the original row."""
    _require_access(session, user_id)
    if not session.get(TradingSignal, signal_id):
        raise NotFound("Signal not found")
    existing = session.exec(
        select(UserSignalAccess).where(UserSignalAccess.user_id == user_id, UserSignalAccess.signal_id == signal_id)
    ).first()
    if existing:
        return existing
    access = UserSignalAccess(user_id=user_id, signal_id=signal_id)
    session.add(access)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return session.exec(
            select(UserSignalAccess).where(UserSignalAccess.user_id == user_id, UserSignalAccess.signal_id == signal_id)
        ).one()
    session.refresh(access)
    return access


def get_user_signal_history(session: Session, user_id: int):
    rows = session.exec(
        select(UserSignalAccess, TradingSignal)
        .join(TradingSignal, UserSignalAccess.signal_id == TradingSignal.id)
        .where(UserSignalAccess.user_id == user_id)
        .order_by(UserSignalAccess.viewed_at.desc(), UserSignalAccess.id.desc())
    ).all()
    return [{"viewed_at": access.viewed_at, "signal": signal} for access, signal in rows]
