"""Data-access helpers for the transaction ledger.

Rows are keyed by the provider's transaction id; ``upsert_transaction`` is
the only write path so re-syncing overlapping ranges never duplicates rows.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, Optional, Set

import pandas as pd
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from classification import has_category
from database import Transaction, utcnow

# Columns refreshed when the provider re-sends a known transaction
UPDATE_FIELDS = (
    "amount",
    "name",
    "merchant_name",
    "category",
    "pending",
    "payment_channel",
    "transaction_type",
    "updated_at",
)

_DIALECT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def normalize_provider_transaction(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a provider transaction payload into ``Transaction`` column values.

    The amount keeps the provider sign (positive = outflow). Category labels
    are the legacy hierarchy followed by the personal-finance primary label.
    """
    transaction_id = raw.get("transaction_id")
    if not transaction_id:
        raise ValueError("provider transaction has no transaction_id")

    if not raw.get("date"):
        raise ValueError(f"provider transaction {transaction_id} has no date")

    labels = [label for label in (raw.get("category") or []) if label]
    pfc = raw.get("personal_finance_category") or {}
    primary = pfc.get("primary") if isinstance(pfc, dict) else None
    if primary and primary not in labels:
        labels.append(primary)

    return {
        "plaid_transaction_id": transaction_id,
        "amount": float(raw.get("amount") or 0),
        "iso_currency_code": raw.get("iso_currency_code") or raw.get("unofficial_currency_code"),
        "date": pd.to_datetime(raw.get("date")).date(),
        "name": raw.get("name") or "Plaid Transaction",
        "merchant_name": raw.get("merchant_name"),
        "category": labels,
        "pending": bool(raw.get("pending", False)),
        "payment_channel": raw.get("payment_channel"),
        "transaction_type": raw.get("transaction_type"),
    }


def upsert_transaction(db: Session, values: Dict[str, Any]) -> None:
    """Insert the transaction or overwrite its mutable fields if the id exists."""
    values = dict(values, updated_at=utcnow())
    insert = _DIALECT_INSERTS.get(db.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(Transaction).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["plaid_transaction_id"],
            set_={field: stmt.excluded[field] for field in UPDATE_FIELDS},
        )
        db.execute(stmt)
        return

    existing = (
        db.query(Transaction)
        .filter(Transaction.plaid_transaction_id == values["plaid_transaction_id"])
        .one_or_none()
    )
    if existing is None:
        db.add(Transaction(**values))
    else:
        for field in UPDATE_FIELDS:
            setattr(existing, field, values[field])
    db.flush()


def existing_transaction_ids(db: Session, transaction_ids: Iterable[str]) -> Set[str]:
    ids = list(transaction_ids)
    if not ids:
        return set()
    rows = db.query(Transaction.plaid_transaction_id).filter(Transaction.plaid_transaction_id.in_(ids))
    return {row[0] for row in rows}


def latest_transaction_date(db: Session, account_id: int) -> Optional[date]:
    """Date of the most recent stored transaction for the account."""
    return db.query(func.max(Transaction.date)).filter(Transaction.account_id == account_id).scalar()


def count_transactions(db: Session, account_id: Optional[int] = None) -> int:
    query = db.query(func.count(Transaction.id))
    if account_id is not None:
        query = query.filter(Transaction.account_id == account_id)
    return query.scalar()


def list_transactions(
    db: Session,
    *,
    account_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Dict[str, Any]:
    """Newest-first page of ledger transactions with the total match count."""
    query = db.query(Transaction)
    if account_id is not None:
        query = query.filter(Transaction.account_id == account_id)
    if start_date is not None:
        query = query.filter(Transaction.date >= start_date)
    if end_date is not None:
        query = query.filter(Transaction.date <= end_date)
    query = query.order_by(Transaction.date.desc(), Transaction.id.desc())

    if category:
        # labels live in a JSON list, so match them in Python
        matches = [t for t in query.all() if has_category(t.category, category)]
        total = len(matches)
        page = matches[offset:offset + limit]
    else:
        total = query.count()
        page = query.offset(offset).limit(limit).all()

    return {
        "transactions": page,
        "total": total,
        "has_more": offset + limit < total,
    }
