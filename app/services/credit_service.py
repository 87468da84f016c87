"""
Credit Service
Gateway spend lookups and usage logging for billing.
"""
from typing import Optional
import httpx
import structlog
from supabase import Client, create_client

from app.config import Settings, get_settings
from app.models.schemas import UsageRecord

logger = structlog.get_logger()


def compute_cost(before: Optional[float], after: Optional[float]) -> float:
    """Spend attributed to one call; 0 when either total is unknown."""
    if before is None or after is None:
        return 0.0
    return max(after - before, 0.0)


class CreditService:
    """Reads cumulative gateway spend and writes ``credit_usage_logs`` rows."""

    TABLE = "credit_usage_logs"

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

    async def fetch_total_used(self) -> Optional[float]:
        """
        Cumulative amount spent on the model gateway.

        Returns:
            total_used, or None when it is unavailable
        """
        url = self.settings.gateway_credits_url
        if not url:
            return None

        try:
            async with httpx.AsyncClient(timeout=self.settings.upstream_timeout_seconds) as client:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {self.settings.openai_api_key}"}
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Gateway credits lookup failed", error=str(e))
            return None

        total_used = data.get("total_used")
        return float(total_used) if total_used is not None else None

    async def log_usage(
        self,
        user_id: str,
        model_name: str,
        usage: UsageRecord,
        action_type: str = "chat",
        session_id: Optional[str] = None,
        document_id: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> None:
        """Record usage. Failures are logged, never raised."""
        try:
            self.client.table(self.TABLE).insert({
                "user_id": user_id,
                "action_type": action_type,
                "model_name": model_name,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_cost": usage.total_cost,
                "session_id": session_id,
                "pdf_id": document_id,
                "metadata": metadata or {},
            }).execute()
        except Exception as e:
            logger.error("Failed to log credit usage", error=str(e), user_id=user_id)


# Singleton instance
_credit_service: Optional[CreditService] = None


def get_credit_service() -> CreditService:
    """Get singleton credit service instance."""
    global _credit_service
    if _credit_service is None:
        _credit_service = CreditService()
    return _credit_service
