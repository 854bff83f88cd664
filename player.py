"""Real-time transport: drives a Timeline from a wall clock inside an asyncio loop."""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from timeline import Timeline

_LOGGER = logging.getLogger("pianosampler.player")

START_DELAY = 0.05
LOOKAHEAD = 0.1
TICK_INTERVAL = 0.025


class Player:
    """Play, pause, seek and stop a loaded timeline.

    Commands are dispatched up to *lookahead* seconds ahead of the clock; their
    trigger times are absolute, so the backend places them sample-accurately.
    """

    def __init__(self, timeline: Timeline, clock: Callable[[], float] = time.perf_counter,
                 lookahead: float = LOOKAHEAD, interval: float = TICK_INTERVAL):
        self.timeline = timeline
        self.clock = clock
        self.lookahead = lookahead
        self.interval = interval
        self.pause_event = asyncio.Event()
        self.stop_requested = False
        self.progress_listeners: List[Callable[[float], None]] = []
        self.finished_listeners: List[Callable[[], None]] = []
        self._start_clock = 0.0
        self._offset = 0.0

    @property
    def total_duration(self) -> float:
        return self.timeline.context.duration

    @property
    def position(self) -> float:
        if self.pause_event.is_set() or not self.timeline.is_running:
            return self._offset
        return self._offset + (self.clock() - self._start_clock)

    async def play(self, offset: float = 0.0):
        """Unlock the backend, then run the timeline until it stops or is stopped."""
        backend = self.timeline.piano.backend
        await backend.resume()
        self.stop_requested = False
        self.pause_event.clear()
        self._offset = offset
        self._start_clock = self.clock()
        self.timeline.start(origin=backend.now() + START_DELAY, offset=offset)
        try:
            while self.timeline.is_running and not self.stop_requested:
                if self.pause_event.is_set():
                    await asyncio.sleep(self.interval)
                    continue
                position = self.position
                self.timeline.advance_to(position + self.lookahead)
                for callback in self.progress_listeners: callback(position)
                await asyncio.sleep(self.interval)
        finally:
            if self.timeline.is_running:
                self.timeline.stop(backend.now())
            _LOGGER.info("Playback finished")
            for callback in self.finished_listeners: callback()

    def toggle_pause(self):
        backend = self.timeline.piano.backend
        if self.pause_event.is_set():
            self._start_clock = self.clock()
            self.timeline.seek(self._offset)
            self.timeline.context.origin = backend.now() + START_DELAY - self._offset
            self.pause_event.clear()
        else:
            self._offset = self.position
            self.pause_event.set()
            self.timeline.piano.stop_all(backend.now())

    def seek(self, position: float):
        _LOGGER.info("Seeking to %.2fs", position)
        self._offset = position
        self._start_clock = self.clock()
        self.timeline.seek(position)
        self.timeline.context.origin = self.timeline.piano.backend.now() + START_DELAY - position

    def stop(self):
        self.stop_requested = True
