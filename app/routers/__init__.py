"""
FundLedger - Routers Package

FastAPI route handlers.

Routers:
- bank_reconciliation: statements, imports, matching, reconciliations,
  adjustments and reports
"""

from app.routers import bank_reconciliation

__all__ = ["bank_reconciliation"]
