"""
Unit tests for chat history and credit usage persistence.
"""
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from app.models.schemas import Citation, UsageRecord
from app.services.chat_service import ChatService
from app.services.credit_service import CreditService, compute_cost


@pytest.fixture
def mock_supabase():
    """Supabase client whose query builder returns itself for chaining."""
    client = Mock()
    query = client.table.return_value
    query.select.return_value = query
    query.eq.return_value = query
    query.order.return_value = query
    query.limit.return_value = query
    query.insert.return_value = query
    query.execute.return_value = Mock(data=[])
    return client


class TestChatService:

    @pytest.mark.asyncio
    async def test_recent_turns_oldest_first(self, settings, mock_supabase):
        mock_supabase.table.return_value.execute.return_value = Mock(data=[
            {"role": "assistant", "content": "Within 30 days (Page 3).", "is_error": False},
            {"role": "user", "content": "Refunds?", "is_error": False},
        ])
        service = ChatService(settings=settings, client=mock_supabase)

        turns = await service.get_recent_turns("session-1", limit=4)

        assert [t.role for t in turns] == ["user", "assistant"]
        query = mock_supabase.table.return_value
        mock_supabase.table.assert_called_with("chat_messages")
        query.eq.assert_any_call("session_id", "session-1")
        query.eq.assert_any_call("is_error", False)
        query.order.assert_called_once_with("created_at", desc=True)
        query.limit.assert_called_once_with(4)

    @pytest.mark.asyncio
    async def test_limit_defaults_to_settings(self, settings, mock_supabase):
        service = ChatService(settings=settings, client=mock_supabase)

        assert await service.get_recent_turns("session-1") == []
        mock_supabase.table.return_value.limit.assert_called_once_with(settings.history_limit)

    @pytest.mark.asyncio
    async def test_save_message(self, settings, mock_supabase):
        mock_supabase.table.return_value.execute.return_value = Mock(data=[{"id": "m-1"}])
        service = ChatService(settings=settings, client=mock_supabase)

        row = await service.save_message(
            "session-1",
            "assistant",
            "Within 30 days (Page 3).",
            sources=[Citation(page_number=3, file_name="policies.pdf", snippet="Refund", score=0.91)],
            usage=UsageRecord(prompt_tokens=120, completion_tokens=30, total_cost=0.25),
        )

        assert row == {"id": "m-1"}
        inserted = mock_supabase.table.return_value.insert.call_args.args[0]
        assert inserted["sources"][0]["page_number"] == 3
        assert inserted["usage"]["total_cost"] == 0.25
        assert inserted["is_error"] is False


class TestCreditService:

    def test_compute_cost(self):
        assert compute_cost(1.0, 1.25) == pytest.approx(0.25)
        assert compute_cost(None, 1.25) == 0.0
        assert compute_cost(2.0, 1.0) == 0.0

    @pytest.mark.asyncio
    async def test_total_used_without_url(self, settings, mock_supabase):
        settings.gateway_credits_url = None
        service = CreditService(settings=settings, client=mock_supabase)

        assert await service.fetch_total_used() is None

    @pytest.mark.asyncio
    async def test_total_used_from_gateway(self, settings, mock_supabase):
        settings.gateway_credits_url = "https://gateway.test/credits"
        service = CreditService(settings=settings, client=mock_supabase)
        response = httpx.Response(
            200,
            json={"total_used": "12.5"},
            request=httpx.Request("GET", settings.gateway_credits_url),
        )

        with patch("httpx.AsyncClient.get", new=AsyncMock(return_value=response)):
            assert await service.fetch_total_used() == 12.5

    @pytest.mark.asyncio
    async def test_total_used_gateway_error(self, settings, mock_supabase):
        settings.gateway_credits_url = "https://gateway.test/credits"
        service = CreditService(settings=settings, client=mock_supabase)

        with patch("httpx.AsyncClient.get", new=AsyncMock(side_effect=httpx.ConnectError("down"))):
            assert await service.fetch_total_used() is None

    @pytest.mark.asyncio
    async def test_log_usage(self, settings, mock_supabase):
        service = CreditService(settings=settings, client=mock_supabase)

        await service.log_usage(
            "user-1", "test-model", UsageRecord(prompt_tokens=10, completion_tokens=5, total_cost=0.01),
            session_id="session-1", document_id="doc-42",
        )

        mock_supabase.table.assert_called_with("credit_usage_logs")
        inserted = mock_supabase.table.return_value.insert.call_args.args[0]
        assert inserted["pdf_id"] == "doc-42"
        assert inserted["action_type"] == "chat"

    @pytest.mark.asyncio
    async def test_log_usage_failure_is_swallowed(self, settings, mock_supabase):
        mock_supabase.table.return_value.insert.side_effect = RuntimeError("db down")
        service = CreditService(settings=settings, client=mock_supabase)

        await service.log_usage("user-1", "test-model", UsageRecord(prompt_tokens=1, completion_tokens=1))
