"""
Services 패키지

로컬 원장(월/예산/거래/채권)과 월 마감, 백업 서비스를 제공합니다.
"""

from .backup_service import BackupService
from .ledger_service import LedgerService
from .month_close_service import MonthCloseService

__all__ = [
    "BackupService",
    "LedgerService",
    "MonthCloseService",
]
