"""Run-wide cancellation signal shared by every plugin invocation."""

import asyncio


class CancellationSignal:
    """
    One-shot cancellation flag for a run.

    Plugins doing long work can poll ``cancelled`` or await ``wait()``; the
    stage executor races every plugin call against ``wait()``.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._deadline: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def cancel_after(self, delay_ms: int, reason: str = "deadline exceeded") -> None:
        """Arm a deadline on the running loop."""
        self.disarm()
        loop = asyncio.get_running_loop()
        self._deadline = loop.call_later(delay_ms / 1000.0, self.cancel, reason)

    def disarm(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def __repr__(self) -> str:
        state = f"cancelled reason={self._reason!r}" if self.cancelled else "active"
        return f"CancellationSignal({state})"
