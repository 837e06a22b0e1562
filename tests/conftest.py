from datetime import date, timedelta

import pytest

from database import Base, PlaidAccount, make_engine, make_session_factory
from errors import ProviderPermanentError


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def plaid_txn(
    transaction_id,
    *,
    amount=12.5,
    day=date(2025, 3, 1),
    name="BLUE BOTTLE COFFEE",
    merchant_name="Blue Bottle",
    category=("Food and Drink", "Coffee Shop"),
    pfc_primary=None,
    pending=False,
    account_id="plaid-acc-1",
):
    """A transaction payload shaped like Plaid's /transactions/get JSON."""
    return {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "iso_currency_code": "USD",
        "date": day.isoformat(),
        "name": name,
        "merchant_name": merchant_name,
        "category": list(category) if category else None,
        "personal_finance_category": {"primary": pfc_primary} if pfc_primary else None,
        "pending": pending,
        "payment_channel": "in store",
        "transaction_type": "place",
    }


def many_txns(count, *, start=date(2025, 1, 1), span_days=None, prefix="txn"):
    span_days = span_days or max(count, 1)
    return [
        plaid_txn(f"{prefix}-{i}", day=start + timedelta(days=(i * span_days) // max(count, 1)))
        for i in range(count)
    ]


class FakeProvider:
    """Scripted stand-in for the Plaid transactions endpoint.

    ``failures`` maps an offset to the exceptions raised, in order, by the
    next calls at that offset.
    """

    def __init__(self, transactions=(), total=None, failures=None, on_call=None):
        self.transactions = list(transactions)
        self.total = len(self.transactions) if total is None else total
        self.failures = {offset: list(errors) for offset, errors in (failures or {}).items()}
        self.on_call = on_call
        self.calls = []

    def get_transactions(self, access_token, start_date, end_date, *, count, offset, account_ids=None):
        self.calls.append(
            {
                "access_token": access_token,
                "start_date": start_date,
                "end_date": end_date,
                "count": count,
                "offset": offset,
                "account_ids": account_ids,
            }
        )
        if self.on_call is not None:
            self.on_call(len(self.calls))
        pending = self.failures.get(offset)
        if pending:
            raise pending.pop(0)
        return {
            "transactions": self.transactions[offset:offset + count],
            "total_transactions": self.total,
        }


class RoutingProvider:
    """Routes each call to a fake keyed by access token."""

    def __init__(self, providers):
        self.providers = providers

    def get_transactions(self, access_token, *args, **kwargs):
        provider = self.providers.get(access_token)
        if provider is None:
            raise ProviderPermanentError("INVALID_ACCESS_TOKEN", status_code=400, error_code="INVALID_ACCESS_TOKEN")
        return provider.get_transactions(access_token, *args, **kwargs)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.alerts = []
        self.summaries = []

    def send_budget_alert(self, recipient, progress, alert_type):
        self.alerts.append((recipient, progress, alert_type))
        if self.fail:
            raise RuntimeError("smtp unavailable")
        return True

    def send_weekly_summary(self, recipient, progress_list):
        self.summaries.append((recipient, progress_list))
        if self.fail:
            raise RuntimeError("smtp unavailable")
        return True


def add_account(session_factory, *, plaid_account_id="plaid-acc-1", name="Checking", access_token="access-1", user_id="user-1"):
    with session_factory() as session:
        account = PlaidAccount(
            plaid_account_id=plaid_account_id,
            name=name,
            mask="0000",
            type="depository",
            subtype="checking",
            institution_id="ins_1",
            access_token=access_token,
            user_id=user_id,
        )
        session.add(account)
        session.commit()
        return account.id
