"""
I Ching Reading Gateway

Fronts a metered LLM call with fingerprint caching, single-flight
admission, a daily budget ledger, and throttle-aware retries.
"""

__version__ = "0.1.0"
