"""Linked financial accounts and the access credential used to query them."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

import structlog
from sqlalchemy.orm import Session

from database import PlaidAccount
from errors import NotFoundError

logger = structlog.get_logger(__name__)


class AccountsProvider(Protocol):
    def exchange_public_token(self, public_token: str) -> tuple:
        ...

    def get_institution_id(self, access_token: str) -> Optional[str]:
        ...

    def list_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        ...


def _text(value) -> Optional[str]:
    # enum-like provider values arrive either as plain strings or objects with .value
    if value is None:
        return None
    return str(getattr(value, "value", value))


def upsert_account(
    db: Session,
    plaid_account: Dict[str, Any],
    *,
    access_token: str,
    item_id: Optional[str] = None,
    institution_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> PlaidAccount:
    account = (
        db.query(PlaidAccount)
        .filter(PlaidAccount.plaid_account_id == plaid_account["account_id"])
        .first()
    )
    if not account:
        account = PlaidAccount(plaid_account_id=plaid_account["account_id"])
        db.add(account)

    account.name = plaid_account.get("name")
    account.mask = plaid_account.get("mask")
    account.type = _text(plaid_account.get("type"))
    account.subtype = _text(plaid_account.get("subtype"))
    account.access_token = access_token
    account.item_id = item_id
    account.institution_id = institution_id or "unknown"
    if user_id is not None:
        account.user_id = user_id
    return account


def link_item(
    db: Session,
    provider: AccountsProvider,
    public_token: str,
    *,
    user_id: Optional[str] = None,
) -> List[PlaidAccount]:
    """Exchange a Link public token and store every account of the item.

    Relinking an item refreshes the stored credential instead of creating
    duplicate accounts.
    """
    access_token, item_id = provider.exchange_public_token(public_token)
    institution_id = provider.get_institution_id(access_token)
    accounts = [
        upsert_account(
            db,
            plaid_account,
            access_token=access_token,
            item_id=item_id,
            institution_id=institution_id,
            user_id=user_id,
        )
        for plaid_account in provider.list_accounts(access_token)
    ]
    db.commit()
    logger.info("item_linked", item_id=item_id, institution_id=institution_id, accounts=len(accounts))
    return accounts


def list_accounts(db: Session, user_id: Optional[str] = None) -> List[PlaidAccount]:
    query = db.query(PlaidAccount)
    if user_id is not None:
        query = query.filter(PlaidAccount.user_id == user_id)
    return query.order_by(PlaidAccount.name.asc()).all()


def get_account(db: Session, account_id: int) -> PlaidAccount:
    account = db.get(PlaidAccount, account_id)
    if account is None:
        raise NotFoundError("Account", account_id)
    return account


def unlink_account(db: Session, account_id: int) -> None:
    """Delete the account together with its transactions and account-scoped budgets."""
    account = get_account(db, account_id)
    db.delete(account)
    db.commit()
    logger.info("account_unlinked", account_id=account_id)
