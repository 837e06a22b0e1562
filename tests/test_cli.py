from datetime import date

import pytest

from cli import parse_args


def test_sync_arguments():
    args = parse_args(["sync", "--account-id", "3", "--start-date", "2025-01-01"])
    assert args.command == "sync"
    assert args.account_id == 3
    assert args.start_date == date(2025, 1, 1)
    assert args.end_date is None


def test_check_alerts_defaults_to_all_users():
    args = parse_args(["check-alerts"])
    assert args.user_id is None


def test_weekly_summary_requires_a_recipient():
    with pytest.raises(SystemExit):
        parse_args(["weekly-summary", "--user-id", "u1"])


def test_command_is_required():
    with pytest.raises(SystemExit):
        parse_args([])
