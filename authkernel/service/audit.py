from __future__ import annotations

from typing import List, Optional, Tuple

from authkernel.logging import get_logger
from authkernel.storage.models import (
    ACTIVITY_LOGIN,
    ACTIVITY_LOGOUT,
    ACTIVITY_REFRESH,
    ACTIVITY_REGISTER,
    ACTIVITY_ROLE_CHANGE,
    ACTIVITY_SOCIAL_LINK,
    ACTIVITY_VERIFY_EMAIL,
    ActivityEvent,
)

ACTIVITY_TYPES = frozenset(
    {
        ACTIVITY_REGISTER,
        ACTIVITY_LOGIN,
        ACTIVITY_REFRESH,
        ACTIVITY_LOGOUT,
        ACTIVITY_VERIFY_EMAIL,
        ACTIVITY_SOCIAL_LINK,
        ACTIVITY_ROLE_CHANGE,
    }
)

logger = get_logger(__name__)


class AuditTrail:
    """Records account activity in the credential store and the log stream."""

    def __init__(self, store) -> None:
        self.store = store

    def record(
        self, account_id: Optional[int], type: str, message: Optional[str] = None
    ) -> ActivityEvent:
        if type not in ACTIVITY_TYPES:
            raise ValueError(f"unknown activity type: {type}")
        event = self.store.record_activity(account_id, type, message)
        logger.info("activity_recorded", account_id=account_id, activity=type)
        return event

    def recent(
        self, account_id: int, page: int = 0, size: int = 20
    ) -> Tuple[List[ActivityEvent], int]:
        return self.store.list_activity(account_id, offset=page * size, limit=size)
