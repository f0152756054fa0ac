"""
Storage layer for ccost.

SQLite persistence for the dedup ledger and the exchange-rate cache.
"""
