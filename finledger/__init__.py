"""
finledger - balance-consistency engine for personal-finance bookkeeping.

Keeps accounts, goals, investments, credit cards and budgets in step with
the movements applied to them.
"""

__version__ = "0.1.0"
