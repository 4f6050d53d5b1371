"""
Sync 패키지

로컬 복제본과 원격 저장소 사이의 push/pull 동기화, 실시간 수신,
트리거 조정을 담당합니다.
"""

from .coordinator import CoordinatorState, InitialSyncStatus, SyncCoordinator
from .engine import SyncEngine, SyncReport
from .realtime import RealtimeListener

__all__ = [
    "CoordinatorState",
    "InitialSyncStatus",
    "RealtimeListener",
    "SyncCoordinator",
    "SyncEngine",
    "SyncReport",
]
