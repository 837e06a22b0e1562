from datetime import date, datetime, timedelta

import pytest

from alerts import (
    check_alerts_for_all_users,
    check_budget_alerts,
    classify_alert,
    evaluate_budget,
    get_unread_alerts,
    mark_alert_read,
    mark_alerts_read,
    record_alert,
    round_percentage,
    send_weekly_summary,
)
from budgets import calculate_progress, create_budget
from conftest import RecordingNotifier, add_account
from database import AlertType, Budget, BudgetAlert, BudgetAlertSlot, BudgetPeriod, BudgetType, Transaction
from errors import NotFoundError
from notifier import Recipient

NOW = datetime(2025, 3, 20, 9, 0)
AS_OF = NOW.date()
ME = Recipient(email="me@example.com", name="Me")


@pytest.fixture
def account_id(session_factory):
    return add_account(session_factory)


def spend(session_factory, account_id, amount, transaction_id="t-1", day=date(2025, 3, 5)):
    with session_factory() as db:
        db.add(
            Transaction(
                plaid_transaction_id=transaction_id,
                account_id=account_id,
                amount=amount,
                date=day,
                name="STORE",
                merchant_name="Store",
                category=["Shops"],
            )
        )
        db.commit()


def make_budget(session_factory, user_id="user-1", **overrides):
    data = {
        "name": "Monthly",
        "budget_type": "TOTAL",
        "amount": 100.0,
        "period": "MONTHLY",
        "start_date": date(2025, 3, 1),
    }
    data.update(overrides)
    with session_factory() as db:
        return create_budget(db, user_id, data).id


def progress_for(db, budget_id):
    return calculate_progress(db, db.get(Budget, budget_id), AS_OF)


@pytest.mark.parametrize(
    "percentage, threshold, expected",
    [
        (0, 80, None),
        (69.9, 80, None),
        (70, 80, AlertType.APPROACHING),
        (75, 80, AlertType.APPROACHING),
        (80, 80, AlertType.WARNING),
        (99.99, 80, AlertType.WARNING),
        (100, 80, AlertType.EXCEEDED),
        (250, 80, AlertType.EXCEEDED),
        (95, 100, AlertType.APPROACHING),
        (5, 5, AlertType.WARNING),
    ],
)
def test_classify_alert(percentage, threshold, expected):
    assert classify_alert(percentage, threshold) == expected


@pytest.mark.parametrize("value, expected", [(79.4, 79), (79.5, 80), (80.5, 81), (120.0, 120)])
def test_round_percentage_is_half_up(value, expected):
    assert round_percentage(value) == expected


def test_warning_alert_is_recorded_and_sent(session_factory, account_id):
    spend(session_factory, account_id, 85.0)
    budget_id = make_budget(session_factory)
    notifier = RecordingNotifier()

    with session_factory() as db:
        created = check_budget_alerts(db, "user-1", notifier=notifier, recipient=ME, now=NOW)
        assert len(created) == 1
        alert = created[0]
        assert alert.budget_id == budget_id
        assert alert.alert_type == AlertType.WARNING
        assert alert.percentage == 85
        assert alert.amount == pytest.approx(85.0)
        assert alert.is_read is False

    assert [(r, a) for r, _, a in notifier.alerts] == [(ME, AlertType.WARNING)]


def test_dining_scenario_at_75_percent_is_approaching(session_factory, account_id):
    spend(session_factory, account_id, 150.0)
    make_budget(session_factory, amount=200.0)

    with session_factory() as db:
        created = check_budget_alerts(db, "user-1", now=NOW)
        assert [a.alert_type for a in created] == [AlertType.APPROACHING]
        assert created[0].percentage == 75


def test_same_kind_is_suppressed_within_window(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    make_budget(session_factory)
    notifier = RecordingNotifier()

    with session_factory() as db:
        first = check_budget_alerts(db, "user-1", notifier=notifier, recipient=ME, now=NOW)
        second = check_budget_alerts(db, "user-1", notifier=notifier, recipient=ME, now=NOW + timedelta(hours=6))
        later = check_budget_alerts(db, "user-1", notifier=notifier, recipient=ME, now=NOW + timedelta(hours=25))

        assert len(first) == 1
        assert second == []
        assert len(later) == 1
        assert db.query(BudgetAlert).count() == 2
    assert len(notifier.alerts) == 2


def test_different_kind_is_not_suppressed(session_factory, account_id):
    spend(session_factory, account_id, 85.0)
    budget_id = make_budget(session_factory)

    with session_factory() as db:
        check_budget_alerts(db, "user-1", now=NOW)

    spend(session_factory, account_id, 30.0, transaction_id="t-2")
    with session_factory() as db:
        created = check_budget_alerts(db, "user-1", now=NOW + timedelta(hours=1))
        assert [a.alert_type for a in created] == [AlertType.EXCEEDED]
        kinds = {a.alert_type for a in db.query(BudgetAlert).filter_by(budget_id=budget_id)}
        assert kinds == {AlertType.WARNING, AlertType.EXCEEDED}


def claim_slot(session_factory, budget_id, last_triggered_at, alert_type=AlertType.EXCEEDED):
    with session_factory() as db:
        db.add(BudgetAlertSlot(budget_id=budget_id, alert_type=alert_type, last_triggered_at=last_triggered_at))
        db.commit()


def test_claimed_slot_suppresses_a_racing_evaluation(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    budget_id = make_budget(session_factory)
    # another worker claimed the slot but its alert row is not visible to the read check
    claim_slot(session_factory, budget_id, NOW - timedelta(hours=1))

    with session_factory() as db:
        result = record_alert(db, progress_for(db, budget_id), AlertType.EXCEEDED, now=NOW)

        assert result is None
        assert db.query(BudgetAlert).count() == 0
        slot = db.get(BudgetAlertSlot, (budget_id, AlertType.EXCEEDED))
        assert slot.last_triggered_at == NOW - timedelta(hours=1)


def test_slot_window_spans_utc_midnight(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    budget_id = make_budget(session_factory)
    just_before_midnight = datetime(2025, 3, 19, 23, 59)
    claim_slot(session_factory, budget_id, just_before_midnight)

    with session_factory() as db:
        progress = progress_for(db, budget_id)
        assert record_alert(db, progress, AlertType.EXCEEDED, now=datetime(2025, 3, 20, 0, 1)) is None

        a_day_later = just_before_midnight + timedelta(hours=24, minutes=1)
        created = record_alert(db, progress, AlertType.EXCEEDED, now=a_day_later)
        assert created is not None
        slot = db.get(BudgetAlertSlot, (budget_id, AlertType.EXCEEDED))
        assert slot.last_triggered_at == created.triggered_at


def test_notifier_failure_keeps_the_alert(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    budget_id = make_budget(session_factory)

    with session_factory() as db:
        alert = evaluate_budget(
            db, progress_for(db, budget_id), notifier=RecordingNotifier(fail=True), recipient=ME, now=NOW
        )
        assert alert is not None
        assert db.query(BudgetAlert).count() == 1


def test_no_alert_below_the_approaching_band(session_factory, account_id):
    spend(session_factory, account_id, 10.0)
    make_budget(session_factory)
    notifier = RecordingNotifier()

    with session_factory() as db:
        assert check_budget_alerts(db, "user-1", notifier=notifier, recipient=ME, now=NOW) == []
    assert notifier.alerts == []


def test_inactive_budgets_are_skipped(session_factory, account_id):
    spend(session_factory, account_id, 500.0)
    make_budget(session_factory, is_active=False)

    with session_factory() as db:
        assert check_budget_alerts(db, "user-1", now=NOW) == []


def test_unevaluable_budget_does_not_block_others(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    with session_factory() as db:
        # CUSTOM without an end date, stored before validation existed
        db.add(
            Budget(
                user_id="user-1",
                name="Broken",
                budget_type=BudgetType.TOTAL,
                amount=50.0,
                period=BudgetPeriod.CUSTOM,
                start_date=date(2025, 3, 1),
            )
        )
        db.commit()
    make_budget(session_factory, name="Fine")

    with session_factory() as db:
        created = check_budget_alerts(db, "user-1", now=NOW)
        assert [a.budget.name for a in created] == ["Fine"]


def test_sweep_covers_every_user_with_active_budgets(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    make_budget(session_factory, user_id="alice")
    make_budget(session_factory, user_id="bob")
    make_budget(session_factory, user_id="carol", is_active=False)
    notifier = RecordingNotifier()

    outcome = check_alerts_for_all_users(session_factory, notifier=notifier, now=NOW)

    assert outcome == {"success": 2, "failed": 0}
    assert sorted(r.email for r, _, _ in notifier.alerts) == ["user-alice@example.com", "user-bob@example.com"]


def test_sweep_counts_failed_users(session_factory, account_id):
    make_budget(session_factory, user_id="alice")
    make_budget(session_factory, user_id="bob")

    def recipient_for(user_id):
        if user_id == "bob":
            raise LookupError("no profile")
        return Recipient(email="alice@example.com", name="Alice")

    outcome = check_alerts_for_all_users(session_factory, recipient_for=recipient_for, now=NOW)

    assert outcome == {"success": 1, "failed": 1}


def test_unread_alerts_and_mark_read(session_factory, account_id):
    spend(session_factory, account_id, 120.0)
    make_budget(session_factory, name="Groceries")
    make_budget(session_factory, name="Total", amount=130.0)
    make_budget(session_factory, user_id="someone-else")

    with session_factory() as db:
        check_budget_alerts(db, "user-1", now=NOW)
        check_budget_alerts(db, "someone-else", now=NOW)
        unread = get_unread_alerts(db, "user-1")
        assert len(unread) == 2

        first = mark_alert_read(db, unread[0].id, "user-1")
        assert first.is_read is True
        assert len(get_unread_alerts(db, "user-1")) == 1

        others = [a.id for a in get_unread_alerts(db, "someone-else")]
        with pytest.raises(NotFoundError):
            mark_alert_read(db, others[0], "user-1")

        assert mark_alerts_read(db, [unread[1].id] + others, "user-1") == 1
        assert mark_alerts_read(db, [], "user-1") == 0
        assert get_unread_alerts(db, "user-1") == []
        assert len(get_unread_alerts(db, "someone-else")) == 1


def test_weekly_summary(session_factory, account_id):
    spend(session_factory, account_id, 40.0)
    make_budget(session_factory)
    notifier = RecordingNotifier()

    with session_factory() as db:
        assert send_weekly_summary(db, "user-1", ME, notifier, as_of=AS_OF) is True
        assert send_weekly_summary(db, "nobody", ME, notifier, as_of=AS_OF) is False
        assert send_weekly_summary(db, "user-1", ME, RecordingNotifier(fail=True), as_of=AS_OF) is False

    recipient, progress_list = notifier.summaries[0]
    assert recipient == ME
    assert [p.spent for p in progress_list] == [pytest.approx(40.0)]
