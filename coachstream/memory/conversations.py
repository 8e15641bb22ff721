"""Conversation persistence for coach chats."""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from ..core.database import Database, to_iso, utcnow

logger = logging.getLogger(__name__)


class ConversationStore:
    """Stores user/assistant message pairs per user and coach."""

    def __init__(self, db: Database):
        self.db = db

    def add_turn(
        self,
        user_id: str,
        coach_id: str,
        user_text: str,
        assistant_text: str,
        trace_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist both sides of one completed turn."""
        stamp = to_iso(now or utcnow())
        for role, content in (("user", user_text), ("assistant", assistant_text)):
            self.db.insert("conversations", {
                "user_id": user_id,
                "coach_id": coach_id,
                "role": role,
                "content": content,
                "trace_id": trace_id,
                "created_at": stamp,
            })
        logger.debug(f"[CONVERSATION] Saved turn for user={user_id} coach={coach_id}")

    def recent(self, user_id: str, coach_id: str, limit: int = 12) -> List[Dict[str, str]]:
        """Latest messages in chronological order."""
        rows = self.db.fetchall(
            "SELECT role, content, created_at FROM conversations "
            "WHERE user_id = :user_id AND coach_id = :coach_id "
            "ORDER BY id DESC LIMIT :limit",
            {"user_id": user_id, "coach_id": coach_id, "limit": limit},
        )
        rows.reverse()
        return [{"role": r["role"], "content": r["content"], "created_at": r["created_at"]} for r in rows]

    def first_message_at(self, user_id: str) -> Optional[str]:
        row = self.db.fetchone(
            "SELECT MIN(created_at) AS first_at FROM conversations WHERE user_id = :user_id",
            {"user_id": user_id},
        )
        return row["first_at"] if row else None
