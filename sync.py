"""
sync.py
-------
Pull transactions from the provider page by page and merge them into the
ledger. Each page is committed as soon as it is merged, and every write is
an upsert keyed on the provider transaction id, so a sync can be re-run,
cancelled or retried over overlapping ranges without duplicating rows.
"""

from __future__ import annotations

import enum
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from classification import SpendView, is_excluded_transfer
from database import PlaidAccount, SessionLocal, utctoday
from errors import NotFoundError, ProviderError
from ledger import (
    existing_transaction_ids,
    latest_transaction_date,
    normalize_provider_transaction,
    upsert_transaction,
)
from retry import RetryPolicy, call_with_retry

logger = structlog.get_logger(__name__)


class TransactionsProvider(Protocol):
    def get_transactions(
        self,
        access_token: str,
        start_date: date,
        end_date: date,
        *,
        count: int,
        offset: int,
        account_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        ...


class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"         # every page fetched, some transactions not stored
    INCOMPLETE = "incomplete"   # stopped at the offset ceiling
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class AccountSyncResult:
    account_id: int
    account_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: SyncStatus = SyncStatus.SUCCESS
    pages: int = 0
    fetched: int = 0
    added: int = 0
    updated: int = 0
    transfers: int = 0
    total_expected: Optional[int] = None
    failed_transactions: List[Tuple[Optional[str], str]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS


@dataclass
class BatchSyncReport:
    results: List[AccountSyncResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[AccountSyncResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[AccountSyncResult]:
        return [r for r in self.results if not r.ok]

    def summary(self) -> Dict[str, Any]:
        return {
            "accounts": len(self.results),
            "succeeded": [r.account_id for r in self.succeeded],
            "failed": {r.account_id: r.error or r.status.value for r in self.failed},
            "failed_transactions": {
                r.account_id: [{"transaction_id": tid, "error": error} for tid, error in r.failed_transactions]
                for r in self.results
                if r.failed_transactions
            },
            "added": sum(r.added for r in self.results),
            "updated": sum(r.updated for r in self.results),
        }


class SyncPipeline:
    """Paginated, retrying ingestion of provider transactions into the ledger."""

    def __init__(
        self,
        provider: TransactionsProvider,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        page_size: int = config.SYNC_PAGE_SIZE,
        offset_ceiling: int = config.SYNC_OFFSET_CEILING,
        page_delay: float = config.SYNC_PAGE_DELAY_SECONDS,
        retry_policy: RetryPolicy = RetryPolicy(),
        max_workers: int = config.SYNC_MAX_WORKERS,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = utctoday,
    ):
        if not 0 < page_size <= config.MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {config.MAX_PAGE_SIZE}")
        self.provider = provider
        self.session_factory = session_factory
        self.page_size = page_size
        self.offset_ceiling = offset_ceiling
        self.page_delay = page_delay
        self.retry_policy = retry_policy
        self.max_workers = max_workers
        self.sleep = sleep
        self.today = today

    # --- single range ---

    def sync_range(
        self,
        db: Session,
        account_id: int,
        access_token: str,
        start_date: date,
        end_date: date,
        *,
        account_ids: Optional[Sequence[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        result: Optional[AccountSyncResult] = None,
    ) -> AccountSyncResult:
        """Fetch every transaction in ``[start_date, end_date]`` and upsert it.

        Raises ``ProviderError`` when a page still fails after the retry
        budget, or immediately on a permanent provider error. Pages merged
        before the failure stay committed.
        """
        if result is None:
            result = AccountSyncResult(account_id=account_id, start_date=start_date, end_date=end_date)
        log = logger.bind(account_id=account_id)
        offset = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                result.status = SyncStatus.CANCELLED
                break
            if result.total_expected is not None and result.fetched >= result.total_expected:
                break
            if offset >= self.offset_ceiling:
                result.status = SyncStatus.INCOMPLETE
                log.warning(
                    "offset_ceiling_reached",
                    offset=offset,
                    fetched=result.fetched,
                    total_expected=result.total_expected,
                )
                break
            if result.pages:
                self.sleep(self.page_delay)

            page = self._fetch_page(access_token, start_date, end_date, offset, account_ids, log)
            result.pages += 1
            if result.total_expected is None:
                result.total_expected = int(page.get("total_transactions") or 0)

            transactions = page.get("transactions") or []
            log.debug("page_fetched", offset=offset, count=len(transactions), total=result.total_expected)
            if not transactions:
                break

            self._merge_page(db, account_id, transactions, result, log)
            result.fetched += len(transactions)
            offset += len(transactions)

        if result.failed_transactions and result.status == SyncStatus.SUCCESS:
            result.status = SyncStatus.PARTIAL
            result.error = f"{len(result.failed_transactions)} transactions could not be stored"
            log.warning("account_sync_partial", failed_transactions=len(result.failed_transactions))
        return result

    def _fetch_page(self, access_token, start_date, end_date, offset, account_ids, log) -> Dict[str, Any]:
        def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            log.warning("page_retry_scheduled", offset=offset, attempt=attempt, delay=delay, error=str(exc))

        return call_with_retry(
            lambda: self.provider.get_transactions(
                access_token,
                start_date,
                end_date,
                count=self.page_size,
                offset=offset,
                account_ids=account_ids,
            ),
            self.retry_policy,
            sleep=self.sleep,
            on_retry=on_retry,
        )

    def _merge_page(self, db: Session, account_id: int, transactions, result: AccountSyncResult, log) -> None:
        known = existing_transaction_ids(db, [t.get("transaction_id") for t in transactions if t.get("transaction_id")])

        for raw in transactions:
            transaction_id = raw.get("transaction_id")
            try:
                values = normalize_provider_transaction(raw)
                values["account_id"] = account_id
                with db.begin_nested():
                    upsert_transaction(db, values)
            except (ValueError, SQLAlchemyError) as exc:
                log.warning("transaction_upsert_failed", transaction_id=transaction_id, error=str(exc))
                result.failed_transactions.append((transaction_id, str(exc)))
                continue

            if transaction_id in known:
                result.updated += 1
            else:
                result.added += 1
                known.add(transaction_id)

            view = SpendView(values["amount"], values["name"], values["merchant_name"], values["category"])
            if is_excluded_transfer(view):
                result.transfers += 1

        db.commit()

    # --- accounts ---

    def incremental_start_date(self, db: Session, account_id: int) -> date:
        """Most recent stored transaction date, or January 1st for a new account."""
        latest = latest_transaction_date(db, account_id)
        if latest is not None:
            return latest
        return date(self.today().year, 1, 1)

    def sync_account(
        self,
        account_id: int,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AccountSyncResult:
        """Sync one stored account, incrementally unless ``start_date`` is given.

        Provider failures are reported on the result rather than raised.
        """
        with self.session_factory() as db:
            account = db.get(PlaidAccount, account_id)
            if account is None:
                raise NotFoundError("Account", account_id)

            end = end_date or self.today()
            start = start_date or self.incremental_start_date(db, account.id)
            access_token, plaid_account_id = account.access_token, account.plaid_account_id
            result = AccountSyncResult(
                account_id=account.id,
                account_name=account.name,
                start_date=start,
                end_date=end,
            )
            log = logger.bind(account_id=account.id, account_name=account.name)
            # end the read transaction so the first page fetch holds no database lock
            db.commit()

            try:
                self.sync_range(
                    db,
                    result.account_id,
                    access_token,
                    start,
                    end,
                    account_ids=[plaid_account_id],
                    cancel_event=cancel_event,
                    result=result,
                )
            except ProviderError as exc:
                db.rollback()
                result.status = SyncStatus.FAILED
                result.error = str(exc)
                log.error("account_sync_failed", error=str(exc), fetched=result.fetched, pages=result.pages)
                return result

        log.info(
            "account_sync_finished",
            status=result.status.value,
            pages=result.pages,
            fetched=result.fetched,
            added=result.added,
            updated=result.updated,
            transfers=result.transfers,
            failed_transactions=len(result.failed_transactions),
        )
        return result

    def _sync_isolated(self, account_id: int, account_name: Optional[str], cancel_event) -> AccountSyncResult:
        try:
            return self.sync_account(account_id, cancel_event=cancel_event)
        except Exception as exc:
            logger.exception("account_sync_failed", account_id=account_id, account_name=account_name)
            return AccountSyncResult(
                account_id=account_id,
                account_name=account_name,
                status=SyncStatus.FAILED,
                error=str(exc),
            )

    def sync_all_accounts(self, *, cancel_event: Optional[threading.Event] = None) -> BatchSyncReport:
        """Sync every stored account; one failing account never blocks the others."""
        with self.session_factory() as db:
            accounts = [(a.id, a.name) for a in db.query(PlaidAccount).order_by(PlaidAccount.id)]

        logger.info("batch_sync_started", accounts=len(accounts))
        if self.max_workers <= 1 or len(accounts) <= 1:
            results = [self._sync_isolated(aid, name, cancel_event) for aid, name in accounts]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda a: self._sync_isolated(a[0], a[1], cancel_event), accounts))

        report = BatchSyncReport(results=results)
        logger.info("batch_sync_completed", **report.summary())
        return report
