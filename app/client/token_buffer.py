"""Render batching for streamed tokens."""

import asyncio
from collections.abc import Callable

DEFAULT_INTERVAL_SECONDS = 0.075


class TokenBuffer:
    """Coalesce tokens into display updates at most once per window.

    The first ``add`` arms a timer; when it fires, everything pending is
    handed to ``on_flush`` as one string. The timer re-arms only if more
    text arrived while flushing. Must be used from a running event loop.
    """

    def __init__(
        self,
        on_flush: Callable[[str], None],
        interval: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self._on_flush = on_flush
        self._interval = interval
        self._pending: list[str] = []
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending_text(self) -> str:
        return "".join(self._pending)

    @property
    def is_armed(self) -> bool:
        return self._timer is not None

    def add(self, token: str) -> None:
        if not token:
            return
        self._pending.append(token)
        if self._timer is None:
            self._schedule()

    def flush(self) -> None:
        """Emit pending text now and cancel the timer."""
        self._cancel_timer()
        self._emit()

    def reset(self) -> None:
        """Discard pending text and cancel the timer."""
        self._cancel_timer()
        self._pending.clear()

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._emit()
        if self._pending and self._timer is None:
            self._schedule()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self) -> None:
        if not self._pending:
            return
        text = "".join(self._pending)
        self._pending.clear()
        self._on_flush(text)
