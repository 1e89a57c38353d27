"""
Services Module
Business logic layer for the DoseKeeper engine
"""

from services.profile_service import ProfileService, profile_service
from services.stock_service import StockService, stock_service
from services.adherence_service import AdherenceService, adherence_service
from services.dose_ledger_service import DoseLedgerService, dose_ledger_service
from services.auth_service import AuthService, TriggerCaller, auth_service


__all__ = [
    # Service classes
    "ProfileService",
    "StockService",
    "AdherenceService",
    "DoseLedgerService",
    "AuthService",
    "TriggerCaller",
    # Singleton instances
    "profile_service",
    "stock_service",
    "adherence_service",
    "dose_ledger_service",
    "auth_service",
]
