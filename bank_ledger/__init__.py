"""
Bank Ledger

Core-banking ledger and lending engine: locked fund transfers, loan
amortization and lifecycle, and recurring deposit (DPS) schedules, all
using Decimal money arithmetic and a hash-chained audit trail.
"""

__version__ = "1.0.0"
