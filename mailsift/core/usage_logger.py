"""Per-call model usage logging to Supabase for cost tracking and analytics."""

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class UsageLogger:
    """Writes one ``api_usage_logs`` row per analyzer call. Never raises."""

    def __init__(self, supabase_client: Any) -> None:
        self.db = supabase_client

    async def log(
        self,
        user_id: str,
        analyzer_name: str,
        model: str = "",
        email_id: str | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: float = 0.0,
        duration_ms: int = 0,
        success: bool = True,
        error_message: str | None = None,
    ) -> None:
        """Log a model call.

        Args:
            user_id: User UUID the call was made for.
            analyzer_name: Analyzer that made the call (e.g. "categorizer").
            model: Model identifier.
            email_id: Email being analyzed.
            input_tokens: Prompt tokens consumed.
            output_tokens: Completion tokens generated.
            cost_usd: Estimated cost of the call.
            duration_ms: Wall-clock latency.
            success: Whether the analyzer produced a result.
            error_message: Error details when the call failed.
        """
        row = {
            "user_id": user_id,
            "service": "openai" if not model.startswith(("claude", "anthropic/")) else "anthropic",
            "endpoint": "chat.completions",
            "model": model,
            "tokens_input": input_tokens,
            "tokens_output": output_tokens,
            "tokens_total": input_tokens + output_tokens,
            "estimated_cost": round(cost_usd, 6),
            "email_id": email_id,
            "analyzer_name": analyzer_name,
            "duration_ms": duration_ms,
            "success": success,
            "error_message": error_message,
        }
        try:
            await asyncio.to_thread(lambda: self.db.table("api_usage_logs").insert(row).execute())
        except Exception as e:
            logger.warning("Failed to log model usage: %s", e, extra={"analyzer": analyzer_name})
