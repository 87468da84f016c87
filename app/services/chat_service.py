"""
Chat Service
Reads recent conversation turns and stores chat messages in Supabase.
"""
from typing import List, Optional
import structlog
from supabase import Client, create_client

from app.config import Settings, get_settings
from app.models.schemas import ChatTurn, Citation, UsageRecord

logger = structlog.get_logger()


class ChatService:
    """Chat history accessor backed by the ``chat_messages`` table."""

    TABLE = "chat_messages"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[Client] = None
    ):
        self.settings = settings or get_settings()
        self.client = client or create_client(
            self.settings.supabase_url,
            self.settings.supabase_service_key
        )

    async def get_recent_turns(
        self,
        session_id: str,
        limit: Optional[int] = None,
        exclude_errors: bool = True
    ) -> List[ChatTurn]:
        """
        Get the most recent turns of a session, oldest first.

        Args:
            session_id: Chat session UUID
            limit: Maximum number of turns (defaults to settings.history_limit)
            exclude_errors: Skip messages flagged as errors

        Returns:
            List of ChatTurn objects in chronological order
        """
        limit = limit or self.settings.history_limit

        query = self.client.table(self.TABLE).select("role, content, is_error").eq("session_id", session_id)
        if exclude_errors:
            query = query.eq("is_error", False)
        result = query.order("created_at", desc=True).limit(limit).execute()

        turns = [
            ChatTurn(role=row["role"], content=row["content"], is_error=bool(row.get("is_error")))
            for row in reversed(result.data or [])
        ]
        logger.info("Loaded chat history", session_id=session_id, turns=len(turns))
        return turns

    async def save_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Optional[List[Citation]] = None,
        usage: Optional[UsageRecord] = None,
        is_error: bool = False
    ) -> dict:
        """Insert a chat message and return the stored row."""
        result = self.client.table(self.TABLE).insert({
            "session_id": session_id,
            "role": role,
            "content": content,
            "sources": [s.model_dump() for s in sources] if sources else None,
            "usage": usage.model_dump() if usage else None,
            "is_error": is_error,
        }).execute()

        logger.info("Chat message saved", session_id=session_id, role=role, is_error=is_error)
        return result.data[0] if result.data else {}


# Singleton instance
_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Get singleton chat service instance."""
    global _chat_service
    if _chat_service is None:
        _chat_service = ChatService()
    return _chat_service
