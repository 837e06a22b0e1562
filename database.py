import enum
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

import config


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utctoday() -> date:
    """Today's date on the same UTC clock as ``utcnow``."""
    return utcnow().date()


def make_engine(url: str = config.DATABASE_URL, **kwargs):
    connect_args = {}
    if url.startswith("sqlite"):
        # writers queue on the file lock for up to this long instead of failing
        connect_args = {"check_same_thread": False, "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS}
    engine = create_engine(url, connect_args=connect_args, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _configure_sqlite_connection)
        event.listen(engine, "begin", _begin_sqlite_transaction)
    return engine


def _configure_sqlite_connection(dbapi_connection, connection_record):
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest properly under pysqlite
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn):
    # Take the write lock up front: concurrent sessions wait for each other
    # instead of failing mid-transaction with "database is locked".
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine()
SessionLocal = make_session_factory(engine)
Base = declarative_base()


# --- Enums ---

class BudgetType(str, enum.Enum):
    TOTAL = "TOTAL"
    CATEGORY = "CATEGORY"
    MERCHANT = "MERCHANT"
    ACCOUNT = "ACCOUNT"


class BudgetPeriod(str, enum.Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"


class AlertType(str, enum.Enum):
    APPROACHING = "APPROACHING"
    WARNING = "WARNING"
    EXCEEDED = "EXCEEDED"


# --- Models ---

class PlaidAccount(Base):
    __tablename__ = "plaid_accounts"

    id = Column(Integer, primary_key=True, index=True)
    plaid_account_id = Column(String, unique=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    name = Column(String)
    mask = Column(String)                # last digits of the account number
    type = Column(String)
    subtype = Column(String)
    institution_id = Column(String)
    item_id = Column(String, index=True)
    access_token = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transactions = relationship(
        "Transaction", back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    budgets = relationship(
        "Budget", back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )


class Transaction(Base):
    """A ledger entry synced from the provider.

    ``amount`` follows the provider convention: positive is an outflow
    (spend), negative is an inflow. Spend totals always sum ``abs(amount)``
    over rows with ``amount > 0``.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    plaid_transaction_id = Column(String, unique=True, nullable=False)
    account_id = Column(Integer, ForeignKey("plaid_accounts.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Float, nullable=False)
    iso_currency_code = Column(String)
    date = Column(Date, nullable=False, index=True)
    name = Column(String, nullable=False)
    merchant_name = Column(String, nullable=True)
    category = Column(JSON, default=list)  # provider category labels, most general first
    pending = Column(Boolean, default=False)
    payment_channel = Column(String)
    transaction_type = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("PlaidAccount", back_populates="transactions")


class Budget(Base):
    __tablename__ = "budgets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    budget_type = Column(Enum(BudgetType, native_enum=False), nullable=False)
    target_value = Column(String, nullable=True)    # category label for CATEGORY budgets
    merchant_name = Column(String, nullable=True)   # MERCHANT budgets
    account_id = Column(Integer, ForeignKey("plaid_accounts.id", ondelete="CASCADE"), nullable=True)
    amount = Column(Float, nullable=False)
    period = Column(Enum(BudgetPeriod, native_enum=False), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    alert_threshold = Column(Integer, default=config.DEFAULT_ALERT_THRESHOLD, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("PlaidAccount", back_populates="budgets")
    alerts = relationship(
        "BudgetAlert", back_populates="budget", cascade="all, delete-orphan", passive_deletes=True,
        order_by="BudgetAlert.triggered_at.desc()",
    )


class BudgetAlert(Base):
    __tablename__ = "budget_alerts"

    id = Column(Integer, primary_key=True, index=True)
    budget_id = Column(Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False, index=True)
    alert_type = Column(Enum(AlertType, native_enum=False), nullable=False)
    triggered_at = Column(DateTime, default=utcnow, nullable=False)
    amount = Column(Float, nullable=False)
    percentage = Column(Integer, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)

    budget = relationship("Budget", back_populates="alerts")


class BudgetAlertSlot(Base):
    """Time of the last alert of each kind per budget.

    Alert creation moves the slot forward with a conditional UPDATE (or
    inserts it), so of two evaluations racing for the same window exactly
    one wins, whatever calendar days they fall on.
    """

    __tablename__ = "budget_alert_slots"

    budget_id = Column(Integer, ForeignKey("budgets.id", ondelete="CASCADE"), primary_key=True)
    alert_type = Column(Enum(AlertType, native_enum=False), primary_key=True)
    last_triggered_at = Column(DateTime, nullable=False)


# --- Init DB ---
def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
