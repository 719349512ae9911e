import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Holds the latest human-readable status. Each update overwrites the last."""

    def __init__(self, reset_delay_s: float = 5.0):
        self.reset_delay_s = reset_delay_s
        self._current = ""
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._listeners: List[Callable[[str], None]] = []

    @property
    def current(self) -> str:
        return self._current

    def subscribe(self, listener: Callable[[str], None]):
        self._listeners.append(listener)

    def update(self, message: str):
        self._cancel_reset()
        self._set(message)

    def step(self, verb: str, current: int, total: int):
        self.update(f"{verb} {current}/{total}...")

    def finish(self, message: Optional[str] = None):
        """Show the terminal status, then clear it after ``reset_delay_s``."""
        if message is not None:
            self.update(message)
        self._cancel_reset()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to schedule on; status stays until the next update.
            return
        self._reset_handle = loop.call_later(self.reset_delay_s, self._set, "")

    def _cancel_reset(self):
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _set(self, message: str):
        self._current = message
        if message:
            logger.info(f"Progress: {message}")
        for listener in self._listeners:
            listener(message)
