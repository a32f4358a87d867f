"""
Mobile Money Ledger

Customer and agent wallets with direct transfers, agent-mediated
cash-in/cash-out approvals, and admin activation that seeds balances.
All balances use Decimal precision and every settled movement is logged.
"""

__version__ = "1.0.0"
