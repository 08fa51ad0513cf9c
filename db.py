from datetime import datetime, timezone
from typing import Optional
import os

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, UniqueConstraint, event, select
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Field, create_engine

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./signaldesk.db")

ROLES = ("user", "admin", "customer_service")
ACCOUNT_TYPES = ("personal", "professional", "enterprise")
RISK_TOLERANCES = ("conservative", "moderate", "aggressive")
SUBSCRIPTION_STATUSES = ("pending", "active", "expired", "cancelled")
SIGNAL_TYPES = ("crypto", "forex", "stocks", "commodities")
SIGNAL_DIRECTIONS = ("BUY", "SELL")
SIGNAL_STATUSES = ("active", "closed", "cancelled")
PAYMENT_METHODS = ("stripe", "paypal", "crypto")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
NOTIFICATION_TYPES = ("purchase", "signup", "support", "system")
EMAIL_TYPES = ("welcome", "payment_confirmation", "password_reset", "notification")
EMAIL_STATUSES = ("sent", "failed", "pending")


def utcnow():
    # Naive UTC throughout; timestamp columns are declared with a plain DateTime type.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _one_of(column: str, values: tuple):
    allowed = ", ".join(f"'{v}'" for v in values)
    return CheckConstraint(f"{column} IN ({allowed})", name=f"ck_{column}")


def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=False, **kwargs)


engine = _make_engine(DATABASE_URL)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (_one_of("role", ROLES),)

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    first_name: str
    last_name: str
    role: str = Field(default="user")
    is_active: bool = Field(default=True)
    email_verified: bool = Field(default=False)
    stripe_customer_id: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, sa_column_kwargs={"onupdate": utcnow})

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class UserProfile(SQLModel, table=True):
    __tablename__ = "user_profiles"
    __table_args__ = (
        _one_of("account_type", ACCOUNT_TYPES),
        _one_of("risk_tolerance", RISK_TOLERANCES),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="users.id")
    unique_id: str = Field(index=True, unique=True)
    account_type: str = Field(default="personal")
    risk_tolerance: str = Field(default="moderate")
    setup_complete: bool = Field(default=False)
    phone: Optional[str] = Field(default=None)
    country: Optional[str] = Field(default=None)
    timezone: str = Field(default="UTC")
    preferences: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, sa_column_kwargs={"onupdate": utcnow})


class UserSubscription(SQLModel, table=True):
    __tablename__ = "user_subscriptions"
    __table_args__ = (_one_of("status", SUBSCRIPTION_STATUSES),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="users.id")
    plan_type: str
    plan_name: str
    price: float = Field(default=0)
    period: str = Field(default="month")
    status: str = Field(default="pending", index=True)
    features: list = Field(default_factory=list, sa_column=Column(JSON))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, sa_column_kwargs={"onupdate": utcnow})


class TradingSignal(SQLModel, table=True):
    __tablename__ = "trading_signals"
    __table_args__ = (
        _one_of("signal_type", SIGNAL_TYPES),
        _one_of("direction", SIGNAL_DIRECTIONS),
        _one_of("status", SIGNAL_STATUSES),
        CheckConstraint("confidence IS NULL OR (confidence >= 0 AND confidence <= 100)", name="ck_confidence"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    signal_type: str = Field(default="crypto")
    symbol: str
    currency_pair: Optional[str] = Field(default=None)
    timeframe: str
    direction: str
    entry_price: float
    stop_loss: float
    take_profit: str
    pips_at_risk: Optional[str] = Field(default=None)
    confidence: Optional[int] = Field(default=None)
    analysis: Optional[str] = Field(default=None)
    ict_concepts: list = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default="active", index=True)
    created_by: Optional[int] = Field(default=None, foreign_key="users.id")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class UserSignalAccess(SQLModel, table=True):
    __tablename__ = "user_signal_access"
    __table_args__ = (UniqueConstraint("user_id", "signal_id", name="uq_user_signal"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="users.id")
    signal_id: int = Field(foreign_key="trading_signals.id")
    viewed_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Purchase(SQLModel, table=True):
    __tablename__ = "purchases"
    __table_args__ = (
        _one_of("payment_method", PAYMENT_METHODS),
        _one_of("payment_status", PAYMENT_STATUSES),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="users.id")
    plan_type: str
    plan_name: str
    amount: float
    currency: str = Field(default="USD")
    payment_method: str
    payment_status: str = Field(default="pending")
    transaction_id: Optional[str] = Field(default=None, index=True)
    payment_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class AdminNotification(SQLModel, table=True):
    __tablename__ = "admin_notifications"
    __table_args__ = (_one_of("notification_type", NOTIFICATION_TYPES),)

    id: Optional[int] = Field(default=None, primary_key=True)
    notification_type: str
    title: str
    message: str
    related_user_id: Optional[int] = Field(default=None, foreign_key="users.id")
    related_purchase_id: Optional[int] = Field(default=None, foreign_key="purchases.id")
    # "metadata" is reserved on declarative classes, so the attribute is renamed.
    details: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    is_read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class EmailLog(SQLModel, table=True):
    __tablename__ = "email_logs"
    __table_args__ = (
        _one_of("email_type", EMAIL_TYPES),
        _one_of("status", EMAIL_STATUSES),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, index=True, foreign_key="users.id")
    email_to: str
    email_type: str
    subject: str
    body: Optional[str] = Field(default=None)
    status: str = Field(default="sent")
    error_message: Optional[str] = Field(default=None)
    details: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


@event.listens_for(Purchase, "after_insert")
def notify_admin_on_purchase(mapper, connection, target):
    users = User.__table__
    row = connection.execute(
        select(users.c.email, users.c.first_name, users.c.last_name).where(users.c.id == target.user_id)
    ).first()
    if row is None:
        return
    amount = f"{float(target.amount):.2f}"
    connection.execute(
        AdminNotification.__table__.insert().values(
            notification_type="purchase",
            title=f"New Purchase: {target.plan_name}",
            message=f"User {row.email} purchased {target.plan_name} for ${amount}",
            related_user_id=target.user_id,
            related_purchase_id=target.id,
            metadata={
                "user_email": row.email,
                "user_name": f"{row.first_name} {row.last_name}",
                "plan_name": target.plan_name,
                "amount": amount,
                "payment_method": target.payment_method,
            },
            is_read=False,
            created_at=utcnow(),
        )
    )


@event.listens_for(User, "after_insert")
def notify_admin_on_signup(mapper, connection, target):
    if target.role != "user":
        return
    connection.execute(
        AdminNotification.__table__.insert().values(
            notification_type="signup",
            title=f"New Signup: {target.full_name}",
            message=f"User {target.email} created an account",
            related_user_id=target.id,
            metadata={"user_email": target.email, "user_name": target.full_name},
            is_read=False,
            created_at=utcnow(),
        )
    )


def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)
