import pytest

from conftest import FakeProvider, add_account, many_txns
from sync import SyncPipeline
from webhooks import WebhookPayload, handle_webhook, is_transactions_update


@pytest.mark.parametrize(
    "webhook_type, webhook_code, expected",
    [
        ("TRANSACTIONS", "INITIAL_UPDATE", True),
        ("TRANSACTIONS", "HISTORICAL_UPDATE", True),
        ("TRANSACTIONS", "DEFAULT_UPDATE", True),
        ("TRANSACTIONS", "TRANSACTIONS_REMOVED", False),
        ("ITEM", "DEFAULT_UPDATE", False),
    ],
)
def test_is_transactions_update(webhook_type, webhook_code, expected):
    payload = WebhookPayload(webhook_type=webhook_type, webhook_code=webhook_code)
    assert is_transactions_update(payload) is expected


def test_handle_webhook_accepts_raw_dicts(session_factory):
    add_account(session_factory)
    provider = FakeProvider(many_txns(2))
    pipeline = SyncPipeline(provider, session_factory, sleep=lambda _: None)

    result = handle_webhook({"webhook_type": "TRANSACTIONS", "webhook_code": "INITIAL_UPDATE"}, pipeline)

    assert result["synced"] is True
    assert result["sync"]["accounts"] == 1
    assert result["sync"]["added"] == 2


def test_ignored_webhook_does_not_sync(session_factory):
    provider = FakeProvider([])
    pipeline = SyncPipeline(provider, session_factory, sleep=lambda _: None)

    result = handle_webhook(WebhookPayload(webhook_type="AUTH", webhook_code="AUTOMATICALLY_VERIFIED"), pipeline)

    assert result == {"message": "Webhook processed successfully", "synced": False}
    assert provider.calls == []
