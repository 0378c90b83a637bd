"""Chat context assembly: parallel signal fan-out for a coaching turn."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from app.context.models import SignalSet
from app.core.chat_errors import SignalProviderFailure
from app.core.config import get_settings
from app.core.context_loader import fetch_past_conversations, fetch_user_context
from app.core.crisis_detector import fetch_crisis
from app.core.discovery_profile import fetch_discovery
from app.core.domain_router import fetch_domain
from app.core.logging import get_logger
from app.core.pattern_analyzer import fetch_session_patterns
from app.core.pattern_synthesizer import fetch_synthesis
from app.core.schemas_chat import SignalRequest
from app.core.style_adapter import fetch_style

logger = get_logger(__name__)

Provider = Callable[[SignalRequest], Awaitable[Any]]

# SignalSet field -> provider
SIGNAL_PROVIDERS: dict[str, Provider] = {
    "user_context": fetch_user_context,
    "past_conversations": fetch_past_conversations,
    "domain": fetch_domain,
    "crisis": fetch_crisis,
    "synthesis": fetch_synthesis,
    "session_patterns": fetch_session_patterns,
    "style": fetch_style,
    "discovery": fetch_discovery,
}


async def _safe_fetch(name: str, provider: Provider, request: SignalRequest, timeout: float) -> Any:
    """Run one provider; any failure or timeout becomes an absent signal."""
    try:
        return await asyncio.wait_for(provider(request), timeout=timeout)
    except asyncio.TimeoutError:
        failure = SignalProviderFailure(name, f"timed out after {timeout:.2f}s")
    except Exception as e:
        failure = SignalProviderFailure(name, f"{type(e).__name__}: {e}")
    logger.warning(str(failure), extra={"conversation_id": request.conversation_id})
    return None


def provider_timeouts() -> dict[str, float]:
    """Providers that need a longer bound than the shared default."""
    return {"crisis": get_settings().CRISIS_PROVIDER_TIMEOUT_SECONDS}


async def assemble_signals(
    request: SignalRequest,
    providers: dict[str, Provider] | None = None,
    timeout: float | None = None,
    timeouts: dict[str, float] | None = None,
) -> SignalSet:
    """
    Fetch every signal for this turn concurrently.

    Args:
        request: Shared provider inputs
        providers: Override the provider table (tests)
        timeout: Per-provider deadline in seconds, defaults to settings
        timeouts: Per-name deadlines overriding ``timeout``, defaults to provider_timeouts()

    Returns:
        SignalSet with None for every provider that failed, timed out or had nothing
    """
    providers = SIGNAL_PROVIDERS if providers is None else providers
    if timeout is None:
        timeout = get_settings().SIGNAL_PROVIDER_TIMEOUT_SECONDS
    if timeouts is None:
        timeouts = provider_timeouts()

    names = list(providers)
    results = await asyncio.gather(
        *(_safe_fetch(n, providers[n], request, timeouts.get(n, timeout)) for n in names)
    )
    signals = SignalSet(**{n: r for n, r in zip(names, results) if r is not None})

    logger.info(
        f"Signals assembled: present={[n for n, r in zip(names, results) if r is not None]}, "
        f"mode={signals.session_mode.value}, crisis={signals.crisis_detected}",
        extra={"conversation_id": request.conversation_id},
    )
    return signals
