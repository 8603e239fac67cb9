"""
Ledger kernel: persistence, logging, errors, clock and configuration shared
by the recurring-transaction processor.
"""
