"""Budget definitions and period-scoped progress.

Progress is never stored: it is recomputed from the ledger on every read.
The calculations only read from the session they are given, so progress for
different budgets can be computed concurrently from separate sessions.

The ledger is a single shared pool: spend totals and merchant suggestions
read every synced transaction regardless of which user linked the account.
Budgets, alerts and accounts carry a ``user_id`` for ownership checks only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd
import pydantic
import structlog
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

import config
from classification import filter_out_transfers, has_category
from database import Budget, BudgetPeriod, BudgetType, PlaidAccount, Transaction, utcnow, utctoday
from errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

# Budget column holding the scope value for each scoped budget type
SCOPE_FIELDS = {
    BudgetType.CATEGORY: "target_value",
    BudgetType.MERCHANT: "merchant_name",
    BudgetType.ACCOUNT: "account_id",
}

PERIOD_OFFSETS = {
    BudgetPeriod.WEEKLY: pd.DateOffset(weeks=1),
    BudgetPeriod.MONTHLY: pd.DateOffset(months=1),
    BudgetPeriod.YEARLY: pd.DateOffset(years=1),
}


# --- Validation ---

def _populated(value) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


class BudgetCreate(BaseModel):
    name: str = Field(..., min_length=1)
    budget_type: BudgetType
    target_value: Optional[str] = None
    merchant_name: Optional[str] = None
    account_id: Optional[int] = None
    amount: float = Field(..., gt=0)
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None
    alert_threshold: int = Field(config.DEFAULT_ALERT_THRESHOLD, ge=1, le=100)
    is_active: bool = True

    @model_validator(mode="after")
    def check_scope_and_dates(self):
        required = SCOPE_FIELDS.get(self.budget_type)
        for field_name in SCOPE_FIELDS.values():
            populated = _populated(getattr(self, field_name))
            if field_name == required and not populated:
                raise ValueError(f"{field_name} is required for {self.budget_type.value} budgets")
            if field_name != required and populated:
                raise ValueError(f"{field_name} must be empty for {self.budget_type.value} budgets")

        if self.period == BudgetPeriod.CUSTOM and self.end_date is None:
            raise ValueError("end_date is required for CUSTOM budgets")
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class BudgetUpdate(BaseModel):
    name: Optional[str] = None
    budget_type: Optional[BudgetType] = None
    target_value: Optional[str] = None
    merchant_name: Optional[str] = None
    account_id: Optional[int] = None
    amount: Optional[float] = None
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    alert_threshold: Optional[int] = None
    is_active: Optional[bool] = None


def _validation_error(exc: pydantic.ValidationError) -> ValidationError:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error["msg"].removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return ValidationError("; ".join(messages), errors=messages)


def _validate(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise _validation_error(exc) from exc


# --- Store ---

def create_budget(db: Session, user_id: str, data: Union[BudgetCreate, Dict[str, Any]]) -> Budget:
    payload = _validate(BudgetCreate, data)
    if payload.account_id is not None and db.get(PlaidAccount, payload.account_id) is None:
        raise NotFoundError("Account", payload.account_id)

    budget = Budget(user_id=user_id, **payload.model_dump())
    db.add(budget)
    db.commit()
    db.refresh(budget)
    logger.info("budget_created", budget_id=budget.id, user_id=user_id, budget_type=budget.budget_type.value)
    return budget


def get_budget(db: Session, budget_id: int, user_id: str) -> Budget:
    budget = db.query(Budget).filter(Budget.id == budget_id, Budget.user_id == user_id).first()
    if budget is None:
        raise NotFoundError("Budget", budget_id)
    return budget


def list_budgets(
    db: Session,
    user_id: str,
    *,
    budget_type: Optional[BudgetType] = None,
    is_active: Optional[bool] = None,
) -> List[Budget]:
    query = db.query(Budget).filter(Budget.user_id == user_id)
    if budget_type is not None:
        query = query.filter(Budget.budget_type == BudgetType(budget_type))
    if is_active is not None:
        query = query.filter(Budget.is_active == is_active)
    return query.order_by(Budget.created_at.desc(), Budget.id.desc()).all()


def update_budget(
    db: Session,
    budget_id: int,
    user_id: str,
    updates: Union[BudgetUpdate, Dict[str, Any]],
) -> Budget:
    """Apply a partial update; the merged budget is validated as a whole."""
    budget = get_budget(db, budget_id, user_id)
    changes = _validate(BudgetUpdate, updates).model_dump(exclude_unset=True)

    merged = {name: getattr(budget, name) for name in BudgetCreate.model_fields}
    merged.update(changes)
    payload = _validate(BudgetCreate, merged)
    if payload.account_id is not None and db.get(PlaidAccount, payload.account_id) is None:
        raise NotFoundError("Account", payload.account_id)

    for name, value in payload.model_dump().items():
        setattr(budget, name, value)
    budget.updated_at = utcnow()
    db.commit()
    db.refresh(budget)
    return budget


def delete_budget(db: Session, budget_id: int, user_id: str) -> None:
    budget = get_budget(db, budget_id, user_id)
    db.delete(budget)
    db.commit()


# --- Progress ---

@dataclass(frozen=True)
class BudgetProgress:
    budget: Budget
    start_date: date
    end_date: date
    spent: float
    remaining: float
    percentage: float
    days_remaining: int
    is_over_budget: bool
    projected_spend: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "budget_id": self.budget.id,
            "name": self.budget.name,
            "amount": self.budget.amount,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "spent": round(self.spent, 2),
            "remaining": round(self.remaining, 2),
            "percentage": round(self.percentage, 2),
            "days_remaining": self.days_remaining,
            "is_over_budget": self.is_over_budget,
            "projected_spend": round(self.projected_spend, 2),
        }


@dataclass(frozen=True)
class BudgetSummary:
    total_budgets: int
    active_budgets: int
    exceeded_budgets: int
    total_budget_amount: float
    total_spent: float
    average_adherence: float


def add_period(start: date, period: BudgetPeriod) -> date:
    """One period unit after ``start``; month ends clamp (Jan 31 -> Feb 28)."""
    offset = PERIOD_OFFSETS.get(BudgetPeriod(period))
    if offset is None:
        raise ValidationError(f"{BudgetPeriod(period).value} budgets need an explicit end date")
    return (pd.Timestamp(start) + offset).date()


def resolve_period(budget: Budget) -> Tuple[date, date]:
    if budget.end_date is not None:
        return budget.start_date, budget.end_date
    return budget.start_date, add_period(budget.start_date, budget.period)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def spent_amount(db: Session, budget: Budget, start_date: date, end_date: date) -> float:
    """Sum of outflows in ``[start_date, end_date]`` within the budget's scope, transfers excluded."""
    query = db.query(
        Transaction.amount,
        Transaction.name,
        Transaction.merchant_name,
        Transaction.category,
    ).filter(
        Transaction.date >= start_date,
        Transaction.date <= end_date,
        Transaction.amount > 0,
    )

    budget_type = BudgetType(budget.budget_type)
    if budget_type == BudgetType.MERCHANT:
        query = query.filter(Transaction.merchant_name.ilike(f"%{_escape_like(budget.merchant_name)}%", escape="\\"))
    elif budget_type == BudgetType.ACCOUNT:
        query = query.filter(Transaction.account_id == budget.account_id)
    # TOTAL applies no extra filter

    rows = query.all()
    if budget_type == BudgetType.CATEGORY:
        rows = [row for row in rows if has_category(row.category, budget.target_value)]

    return float(sum(abs(row.amount) for row in filter_out_transfers(rows)))


def calculate_progress(db: Session, budget: Budget, as_of: Optional[date] = None) -> BudgetProgress:
    today = as_of or utctoday()
    start_date, end_date = resolve_period(budget)
    spent = spent_amount(db, budget, start_date, end_date)

    amount = float(budget.amount)
    percentage = (spent / amount) * 100 if amount > 0 else 0.0

    days_elapsed = (today - start_date).days
    total_days = (end_date - start_date).days
    projected = (spent / days_elapsed) * total_days if days_elapsed > 0 else 0.0

    return BudgetProgress(
        budget=budget,
        start_date=start_date,
        end_date=end_date,
        spent=spent,
        remaining=max(0.0, amount - spent),
        percentage=percentage,
        days_remaining=max(0, (end_date - today).days),
        is_over_budget=spent > amount,
        projected_spend=projected,
    )


def get_budget_progress(db: Session, budget_id: int, user_id: str, as_of: Optional[date] = None) -> BudgetProgress:
    return calculate_progress(db, get_budget(db, budget_id, user_id), as_of)


def get_all_budget_progress(db: Session, user_id: str, as_of: Optional[date] = None) -> List[BudgetProgress]:
    return [calculate_progress(db, b, as_of) for b in list_budgets(db, user_id, is_active=True)]


def budget_summary(db: Session, user_id: str, as_of: Optional[date] = None) -> BudgetSummary:
    budgets = list_budgets(db, user_id)
    progress_list = get_all_budget_progress(db, user_id, as_of)

    adherence = [min(100.0, p.percentage) for p in progress_list]
    return BudgetSummary(
        total_budgets=len(budgets),
        active_budgets=sum(1 for b in budgets if b.is_active),
        exceeded_budgets=sum(1 for p in progress_list if p.is_over_budget),
        total_budget_amount=float(sum(b.amount for b in budgets)),
        total_spent=float(sum(p.spent for p in progress_list)),
        average_adherence=sum(adherence) / len(adherence) if adherence else 0.0,
    )


def merchant_suggestions(db: Session, limit: int = 10) -> List[Dict[str, Any]]:
    """Merchants with the highest outflow across the ledger, as starting points for merchant budgets."""
    query = db.query(
        Transaction.amount,
        Transaction.name,
        Transaction.merchant_name,
        Transaction.category,
    ).filter(Transaction.merchant_name.isnot(None), Transaction.amount > 0)

    rows = filter_out_transfers(query.all())
    if not rows:
        return []

    df = pd.DataFrame([{"merchant_name": r.merchant_name, "amount": abs(r.amount)} for r in rows])
    by_merchant = (
        df.groupby("merchant_name")["amount"]
        .agg(total_spent="sum", transaction_count="count")
        .sort_values("total_spent", ascending=False)
        .head(limit)
    )
    return [
        {
            "merchant_name": merchant,
            "total_spent": float(row["total_spent"]),
            "transaction_count": int(row["transaction_count"]),
        }
        for merchant, row in by_merchant.iterrows()
    ]
