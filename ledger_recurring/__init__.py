"""
Recurring-transaction processor.

Materializes ledger entries from recurring templates, advances each
template's schedule, and does so exactly once per due occurrence under
repeated or overlapping invocation.
"""

__version__ = "0.1.0"
