"""
Integration tests for the DeepBook buyback bot.

These tests drive BuybackService end to end over an in-memory chain.
No network access is needed.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
