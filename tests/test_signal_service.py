from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

import purchase_service
import signal_service
from db import UserSignalAccess, UserSubscription, utcnow
from errors import AccessDenied, InvalidInput, NotFound


def publish(session, admin, **overrides):
    fields = {
        "symbol": "btcusdt",
        "timeframe": "H4",
        "direction": "buy",
        "entry_price": "64250.5",
        "stop_loss": 63100,
        "take_profit": "65500 / 67000",
        "confidence": 80,
        "ict_concepts": ["FVG", " order block ", ""],
    }
    fields.update(overrides)
    return signal_service.create_signal(session, admin, **fields)


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def subscriber(session, make_user):
    user = make_user(plan_type="pro")
    purchase_service.activate_subscription(session, user.id, "pro")
    return user


def test_create_signal_normalizes_fields(session, admin):
    signal = publish(session, admin)
    assert signal.symbol == "BTCUSDT"
    assert signal.direction == "BUY"
    assert signal.entry_price == 64250.5
    assert signal.status == "active"
    assert signal.created_by == admin.id
    assert signal.ict_concepts == ["FVG", "order block"]


def test_only_admin_publishes(session, make_user):
    with pytest.raises(AccessDenied):
        publish(session, make_user(role="customer_service"))


@pytest.mark.parametrize(
    "overrides",
    [
        {"direction": "HOLD"},
        {"signal_type": "bonds"},
        {"confidence": 101},
        {"confidence": -5},
        {"confidence": "abc"},
        {"entry_price": "abc"},
        {"stop_loss": 0},
        {"symbol": " "},
    ],
)
def test_create_signal_validation(session, admin, overrides):
    with pytest.raises(InvalidInput):
        publish(session, admin, **overrides)


def test_blank_confidence_is_optional(session, admin):
    assert publish(session, admin, confidence=" ").confidence is None
    assert publish(session, admin, confidence="70").confidence == 70


def test_aware_expiry_is_stored_as_utc(session, admin):
    expires = datetime(2030, 5, 1, 14, 30, tzinfo=timezone(timedelta(hours=2)))
    signal = publish(session, admin, expires_at=expires)
    assert signal.expires_at == datetime(2030, 5, 1, 12, 30)


def test_no_subscription_means_no_access(session, make_user):
    user = make_user()
    has_access, subscription, message = signal_service.check_user_signal_access(session, user.id)
    assert not has_access
    assert subscription is None
    assert message == "No active subscription found"
    with pytest.raises(AccessDenied):
        signal_service.get_active_signals(session, user.id)


def test_expired_subscription_is_flipped(session, subscriber):
    sub = session.exec(select(UserSubscription).where(UserSubscription.user_id == subscriber.id)).one()
    sub.expires_at = utcnow() - timedelta(minutes=1)
    session.add(sub)
    session.commit()

    has_access, _, message = signal_service.check_user_signal_access(session, subscriber.id)
    assert not has_access
    assert message == "Subscription has expired"
    session.refresh(sub)
    assert sub.status == "expired"


def test_staff_always_have_access(session, make_user):
    agent = make_user(role="customer_service")
    assert signal_service.check_user_signal_access(session, agent.id)[0]


def test_active_signals_newest_first_and_filtered(session, admin, subscriber):
    old = publish(session, admin, symbol="ETHUSDT")
    fx = publish(session, admin, symbol="EURUSD", signal_type="forex", currency_pair="EUR/USD")
    closed = publish(session, admin, symbol="SOLUSDT")
    signal_service.update_signal_status(session, admin, closed.id, "closed")
    publish(session, admin, symbol="XRPUSDT", expires_at=utcnow() - timedelta(hours=1))

    signals = signal_service.get_active_signals(session, subscriber.id)
    assert [s.id for s in signals] == [fx.id, old.id]

    forex = signal_service.get_signals_by_type(session, "forex", subscriber.id)
    assert [s.symbol for s in forex] == ["EURUSD"]

    with pytest.raises(InvalidInput):
        signal_service.get_signals_by_type(session, "bonds")


def test_update_signal_status_checks(session, admin, subscriber):
    signal = publish(session, admin)
    with pytest.raises(AccessDenied):
        signal_service.update_signal_status(session, subscriber, signal.id, "closed")
    with pytest.raises(InvalidInput):
        signal_service.update_signal_status(session, admin, signal.id, "paused")
    with pytest.raises(NotFound):
        signal_service.update_signal_status(session, admin, 999, "closed")


def test_track_view_once(session, admin, subscriber):
    signal = publish(session, admin)
    first = signal_service.track_signal_view(session, subscriber.id, signal.id)
    second = signal_service.track_signal_view(session, subscriber.id, signal.id)
    assert first.id == second.id
    assert len(session.exec(select(UserSignalAccess)).all()) == 1

    with pytest.raises(NotFound):
        signal_service.track_signal_view(session, subscriber.id, 999)


def test_signal_history_newest_first(session, admin, subscriber):
    a = publish(session, admin, symbol="AAPL", signal_type="stocks")
    b = publish(session, admin, symbol="XAUUSD", signal_type="commodities")
    signal_service.track_signal_view(session, subscriber.id, a.id)
    signal_service.track_signal_view(session, subscriber.id, b.id)

    history = signal_service.get_user_signal_history(session, subscriber.id)
    assert [h["signal"].symbol for h in history] == ["XAUUSD", "AAPL"]
