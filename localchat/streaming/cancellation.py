import asyncio


class CancellationToken:
    """Cooperative cancellation flag checked by the token pipeline before each forwarded token.

    ``wait()`` lets a pending backend read be raced against a stop request.
    """

    __slots__ = ("_event", "reason")

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped by user"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self):
        await self._event.wait()

    def __repr__(self):
        return f"CancellationToken(cancelled={self.cancelled})"
