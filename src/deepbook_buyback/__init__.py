"""
DeepBook Buyback Bot.

Watches DeepBook trade events for registered pools and buys the vault
token back whenever a trade prints below the pool's floor price. The
bot handles event polling, floor checks, sizing and bookkeeping; signing
and submitting the purchase transaction is delegated to a pluggable
trade executor.
"""

__version__ = "0.1.0"
