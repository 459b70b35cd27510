from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class UserTrackingService:
    """Remembers which users have chatted so greetings fire once per platform."""

    def __init__(self) -> None:
        self._seen: set[tuple[str, str]] = set()

    def is_first_message(self, user_id: str | None, platform: str) -> bool:
        if not user_id:
            return False
        key = (platform, user_id)
        if key in self._seen:
            return False
        self._seen.add(key)
        logger.debug("user_first_seen", platform=platform, user_id=user_id)
        return True

    def has_seen(self, user_id: str, platform: str) -> bool:
        return (platform, user_id) in self._seen

    def reset(self) -> None:
        self._seen.clear()

    def get_stats(self) -> dict[str, int]:
        return {"tracked_users": len(self._seen)}
