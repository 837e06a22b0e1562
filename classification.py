"""Heuristic that keeps internal transfers out of spend aggregates.

A credit-card bill paid from a checking account shows up twice in the
ledger: once as the card purchases and once as the payment. Counting the
payment would double the spend, so it is excluded when it looks like an
internal loan/transfer payment.

The filter only needs ``amount``, ``name``, ``merchant_name`` and
``category``, so it works on full ``Transaction`` rows, on SQLAlchemy row
projections, and on :class:`SpendView` tuples built from provider payloads.
"""

from __future__ import annotations

import re
from typing import Iterable, List, NamedTuple, Optional, Protocol, Sequence, TypeVar, Union

INTERNAL_PAYMENT_MARKER = "PAYMENT THANK YOU"
TRANSFER_CATEGORY_LABEL = "LOAN_PAYMENTS"

CategoryValue = Union[str, Sequence[str], None]


class SpendLike(Protocol):
    amount: float
    name: str
    merchant_name: Optional[str]
    category: CategoryValue


class SpendView(NamedTuple):
    amount: float
    name: str
    merchant_name: Optional[str]
    category: CategoryValue


T = TypeVar("T", bound=SpendLike)


def _normalize_text(text: Optional[str]) -> str:
    # Uppercase and collapse punctuation/whitespace runs to one space
    return re.sub(r"[^A-Z0-9]+", " ", (text or "").upper()).strip()


def category_labels(category: CategoryValue) -> List[str]:
    """Return the category labels as a list whether stored as a string or a list."""
    if category is None:
        return []
    if isinstance(category, str):
        return [category] if category.strip() else []
    return [label for label in category if label]


def has_category(category: CategoryValue, label: str, *, case_sensitive: bool = True) -> bool:
    labels = category_labels(category)
    if case_sensitive:
        return label in labels
    wanted = label.strip().lower()
    return any(existing.strip().lower() == wanted for existing in labels)


def is_excluded_transfer(transaction: SpendLike) -> bool:
    """True when the transaction is an internal loan/transfer payment.

    All three must hold: the description contains the internal-payment
    marker, there is no merchant name, and one of the category labels is the
    loan/transfer payment label (case-insensitive).
    """
    if _normalize_text(INTERNAL_PAYMENT_MARKER) not in _normalize_text(transaction.name):
        return False
    if transaction.merchant_name and transaction.merchant_name.strip():
        return False
    return has_category(transaction.category, TRANSFER_CATEGORY_LABEL, case_sensitive=False)


def filter_out_transfers(transactions: Iterable[T]) -> List[T]:
    return [t for t in transactions if not is_excluded_transfer(t)]


def get_excluded_transfers(transactions: Iterable[T]) -> List[T]:
    """Transfers that spend totals leave out, for transparency views."""
    return [t for t in transactions if is_excluded_transfer(t)]
