"""Personal Finance Tracker sync and budget engine.

Pulls transactions from Plaid into a local ledger, keeps internal transfers
out of spend totals, and derives budget progress and alerts from the
ledger. See ``sync.py``, ``budgets.py`` and ``alerts.py`` for the engine and
``cli.py`` for the scheduler entry points.
"""
