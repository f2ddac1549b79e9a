"""
Loan Ledger & Lifecycle Engine

Prices loan applications into amortized loans, applies repayments against
outstanding balances, and classifies arrears for a microfinance back office.
All money is handled as Decimal, never float.
"""

__version__ = "1.0.0"
