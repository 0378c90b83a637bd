"""Per-turn usage logging for token and cost tracking."""

import logging

from app.db.supabase_client import get_supabase

logger = logging.getLogger(__name__)

# Pricing per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # Anthropic
    "claude-opus-4-5-20251101": (15.0, 75.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-haiku-4-5-20251001": (0.80, 4.0),
    "claude-3-5-haiku-20241022": (0.80, 4.0),
    # OpenAI
    "gpt-4o": (2.50, 10.0),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4o-mini": (0.15, 0.60),
}


def estimate_cost(model: str, tokens_input: int, tokens_output: int) -> float:
    """Estimate cost in USD based on model pricing."""
    pricing = MODEL_PRICING.get(model)
    if not pricing:
        # Longest prefix wins for dated model variants
        for key in sorted(MODEL_PRICING, key=len, reverse=True):
            if model.startswith(key):
                pricing = MODEL_PRICING[key]
                break
    if not pricing:
        logger.warning(f"No pricing found for model '{model}', using $0")
        return 0.0

    input_rate, output_rate = pricing
    cost = (tokens_input * input_rate / 1_000_000) + (tokens_output * output_rate / 1_000_000)
    return round(cost, 6)


def log_llm_usage(
    model: str,
    tokens_input: int,
    tokens_output: int,
    user_id: str,
    conversation_id: str | None = None,
    message_id: str | None = None,
    operation: str = "chat",
    duration_ms: int = 0,
    crisis_detected: bool = False,
) -> None:
    """Write one row to ``usage_logs``. Fire-and-forget: never raises."""
    try:
        estimated_cost = estimate_cost(model, tokens_input, tokens_output)
        row = {
            "user_id": user_id,
            "operation": operation,
            "model": model,
            "prompt_tokens": tokens_input,
            "completion_tokens": tokens_output,
            "cost_usd": estimated_cost,
            "duration_ms": duration_ms,
            "crisis_detected": crisis_detected,
        }
        if conversation_id:
            row["conversation_id"] = conversation_id
        if message_id:
            row["message_id"] = message_id

        get_supabase().table("usage_logs").insert(row).execute()

        logger.debug(
            f"LLM usage logged: {operation} model={model} "
            f"tokens={tokens_input}+{tokens_output} cost=${estimated_cost:.4f}"
        )
    except Exception as e:
        # Never fail the chat turn due to usage logging
        logger.error(f"Failed to log LLM usage: {e}")
