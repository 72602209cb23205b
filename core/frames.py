# =============================================================================
# RealtyVoice Agent - Frame Scheduler
# =============================================================================
"""
Per-tick sampling callbacks driven by the event loop's timer primitive.

Playback word timing and the visualizers both run one callback per frame.
Callbacks are one-shot: a consumer that wants the next frame requests it
again from inside its callback.
"""

import asyncio
import itertools
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

FrameCallback = Callable[[float], None]


class FrameScheduler:
    """
    Schedules one-shot frame callbacks at a fixed rate.

    Each callback receives the loop time at which it fired. Handles are plain
    integers so cancelling an already-fired or unknown handle is harmless.
    """

    def __init__(self, frame_rate: float = 60.0, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.frame_interval = 1.0 / frame_rate
        self._loop = loop
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.TimerHandle] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def request_frame(self, callback: FrameCallback) -> int:
        """Run `callback` on the next frame. Returns a handle for cancel_frame."""
        handle_id = next(self._ids)

        def _fire() -> None:
            if self._pending.pop(handle_id, None) is None:
                return
            try:
                callback(self.loop.time())
            except Exception:
                logger.exception("Frame callback failed")

        self._pending[handle_id] = self.loop.call_later(self.frame_interval, _fire)
        return handle_id

    def cancel_frame(self, handle_id: int) -> None:
        timer = self._pending.pop(handle_id, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> None:
        for timer in self._pending.values():
            timer.cancel()
        self._pending.clear()

    @property
    def pending(self) -> int:
        return len(self._pending)
