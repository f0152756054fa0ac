"""
Core modules for ccost.

This package contains the parser, deduplicator, pricing resolver,
aggregator and exchange-rate cache.
"""
