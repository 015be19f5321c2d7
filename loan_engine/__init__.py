"""
Loan Engine

Loan amortization and event-adjustment core: schedule generation,
part-payment recompute, foreclosure settlement and reconciled summaries,
all using Decimal math over an append-only event ledger.
"""

__version__ = "1.0.0"
