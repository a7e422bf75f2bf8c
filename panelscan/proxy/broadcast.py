"""Single-slot broadcast of the usable proxy list.

The supervisor publishes whole tuples; fetch workers read the latest one
or await the next version. Readers never observe a partially built list.
"""

from __future__ import annotations

import asyncio


class ProxyBroadcast:
    """Latest-value channel with a version counter (last writer wins)."""

    def __init__(self, initial: list[str] | tuple[str, ...] = ()) -> None:
        self._urls: tuple[str, ...] = tuple(initial)
        self._version = 1 if self._urls else 0
        self._changed = asyncio.Condition()

    @property
    def version(self) -> int:
        return self._version

    def current(self) -> tuple[str, ...]:
        return self._urls

    async def publish(self, urls: list[str] | tuple[str, ...]) -> None:
        """Replace the slot contents; no-op when the list is unchanged."""
        snapshot = tuple(urls)
        if snapshot == self._urls:
            return
        async with self._changed:
            self._urls = snapshot
            self._version += 1
            self._changed.notify_all()

    async def wait_for_change(self, seen_version: int, timeout: float | None = None) -> tuple[int, tuple[str, ...]]:
        """Block until the version differs from ``seen_version`` or the timeout passes."""
        async with self._changed:
            try:
                await asyncio.wait_for(
                    self._changed.wait_for(lambda: self._version != seen_version),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                pass
            return self._version, self._urls
