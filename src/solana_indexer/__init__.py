"""
Solana indexer: keeps Helius webhook subscriptions in sync with per-owner
indexing configurations and writes delivered transactions into the owner's
own PostgreSQL database.
"""

__version__ = "1.0.0"
