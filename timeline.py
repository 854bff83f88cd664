"""Score timeline: time-ordered scheduled commands dispatched to the piano at absolute times."""

import heapq
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from errors import MalformedScoreError
from models import NoteOff, NoteOn, PedalChange, Score, ScoreTrack, TimelineEvent
from piano import Piano

_LOGGER = logging.getLogger("pianosampler.timeline")

AUTO_STOP_DELAY = 0.1
CC_MAX = 127.0
DEFAULT_BPM = 120.0

# same-instant ordering: the pedal must be current before coincident keys are handled
PRIORITY_PEDAL = 0
PRIORITY_NOTE = 1
PRIORITY_STOP = 2


@dataclass
class PlaybackContext:
    """Transport state of one loaded timeline: created at load, reset at stop.

    *origin* is the backend clock time at which transport position 0 sounds.
    """
    duration: float = 0.0
    bpm: float = DEFAULT_BPM
    origin: float = 0.0
    position: float = 0.0
    state: str = 'stopped'

    def reset(self):
        self.position = 0.0
        self.state = 'stopped'


@dataclass(order=True)
class ScheduledCommand:
    """Event (or auto-stop, when event is None) due at *time*; priority then seq break ties."""
    time: float
    priority: int
    seq: int
    event: Optional[TimelineEvent] = field(default=None, compare=False)


def _is_number(value) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and not math.isnan(value)


def _priority(event: TimelineEvent) -> int:
    return PRIORITY_PEDAL if isinstance(event, PedalChange) else PRIORITY_NOTE


def order_events(events: Iterable[TimelineEvent]) -> List[TimelineEvent]:
    """Check that *events* are playable in the given order and apply the pedal-first tie-break."""
    ordered = list(events)
    previous = None
    for event in ordered:
        if not isinstance(event, (NoteOn, NoteOff, PedalChange)):
            raise MalformedScoreError(f"Unknown timeline event: {event!r}")
        if math.isnan(event.time) or event.time < 0:
            raise MalformedScoreError(f"Invalid event time: {event!r}")
        if previous is not None and event.time < previous.time:
            raise MalformedScoreError(
                f"Events out of order: {event!r} comes after {previous!r}")
        if isinstance(event, NoteOn) and not _is_number(event.velocity):
            raise MalformedScoreError(f"Invalid velocity: {event!r}")
        if isinstance(event, PedalChange) and not (_is_number(event.value) and 0 <= event.value <= 1):
            raise MalformedScoreError(f"Pedal value must be normalized to 0-1: {event!r}")
        previous = event
    return sorted(ordered, key=lambda e: (e.time, _priority(e)))


def build_events(track: ScoreTrack) -> List[TimelineEvent]:
    """Turn a score track into pedal changes, note-ons and note-offs in playing order.

    At one instant a note-off is played before a note-on so a restruck key releases
    the previous strike first; a zero-length note keeps its own on before its off.
    """
    keyed = []
    for i, cc in enumerate(track.sustain_events):
        keyed.append(((cc.time, 0, i), PedalChange(cc.time, cc.value / CC_MAX)))
    for i, note in enumerate(track.notes):
        keyed.append(((note.time, 2, i), NoteOn(note.time, note.pitch, note.velocity)))
        off_rank = 1 if note.duration > 0 else 3
        keyed.append(((note.end_time, off_rank, i), NoteOff(note.end_time, note.pitch)))
    keyed.sort(key=lambda pair: pair[0])
    return [event for _, event in keyed]


class Timeline:
    """Schedules a single pass of events against a :class:`Piano`. No looping."""

    def __init__(self, piano: Piano, context: Optional[PlaybackContext] = None):
        self.piano = piano
        self.context = context or PlaybackContext()
        self._events: List[TimelineEvent] = []
        self._queue: List[ScheduledCommand] = []
        self._seq = 0
        self._stop_listeners: List[Callable[[], None]] = []

    @property
    def events(self) -> List[TimelineEvent]:
        return list(self._events)

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self.context.state == 'started'

    def on_stop(self, callback: Callable[[], None]):
        self._stop_listeners.append(callback)

    def load_score(self, score: Score):
        """Replace the timeline with the first playable track of *score*.

        Raises :class:`MalformedScoreError` without touching the current timeline
        when the score has no notes.
        """
        track = score.first_playable_track()
        if track is None:
            raise MalformedScoreError("No playable tracks found in the score.")
        events = build_events(track)
        self.schedule(events, duration=max(score.duration, events[-1].time))
        if score.tempos:
            self.context.bpm = score.tempos[0]
        _LOGGER.info("Loaded track '%s': %d notes, %.2fs at %.1f bpm",
                     track.name, track.note_count, self.context.duration, self.context.bpm)

    def schedule(self, events: Iterable[TimelineEvent], duration: Optional[float] = None):
        """Replace all pending effects with *events*, which must be in time order."""
        ordered = order_events(events)
        self.cancel()
        self._events = ordered
        last = ordered[-1].time if ordered else 0.0
        self.context.duration = last if duration is None else max(duration, last)
        self._arm(0.0)

    def start(self, origin: float = 0.0, offset: float = 0.0):
        """Begin (or restart) playback so that *offset* sounds at backend time *origin*."""
        self._arm(offset)
        self.context.origin = origin - offset
        self.context.position = offset
        self.piano.set_pedal(self._pedal_at(offset), origin, noise=False)
        self.context.state = 'started'
        _LOGGER.info("Transport started at %.2fs", offset)

    def seek(self, position: float):
        now = self.context.origin + self.context.position
        self.piano.stop_all(now)
        self.context.origin += self.context.position - position
        self.context.position = position
        self.piano.set_pedal(self._pedal_at(position), self.context.origin + position, noise=False)
        self._arm(position)

    def advance_to(self, position: float) -> int:
        """Dispatch every command due at or before *position*; returns how many fired."""
        fired = 0
        while self._queue and self._queue[0].time <= position:
            command = heapq.heappop(self._queue)
            self._dispatch(command)
            fired += 1
        if self.is_running and math.isfinite(position):
            self.context.position = position
        return fired

    def run(self) -> int:
        return self.advance_to(math.inf)

    def stop(self, time: Optional[float] = None):
        """Halt playback, silence the piano and rewind to 0. Loaded events are kept."""
        self._queue = []
        self.piano.stop_all(time)
        was_running = self.is_running
        self.context.reset()
        if was_running: _LOGGER.info("Transport stopped")
        for callback in list(self._stop_listeners): callback()

    def cancel(self):
        """Drop the loaded events and every pending effect; pedal and voices go idle."""
        if self._queue:
            _LOGGER.debug("Cancelling %d pending commands", len(self._queue))
        self._queue = []
        self._events = []
        self.piano.stop_all()
        self.context.reset()
        self.context.duration = 0.0

    def _arm(self, offset: float):
        self._queue = []
        for event in self._events:
            if event.time >= offset: self._push(event.time, _priority(event), event)
        # armed even without events: the auto-stop is what ends a running transport
        self._push(self.context.duration + AUTO_STOP_DELAY, PRIORITY_STOP, None)

    def _pedal_at(self, offset: float) -> float:
        """Pedal value in effect just before *offset*: the last pedal change earlier than it."""
        value = 0.0
        for event in self._events:
            if event.time >= offset: break
            if isinstance(event, PedalChange): value = event.value
        return value

    def _push(self, time: float, priority: int, event: Optional[TimelineEvent]):
        self._seq += 1
        heapq.heappush(self._queue, ScheduledCommand(time, priority, self._seq, event))

    def _dispatch(self, command: ScheduledCommand):
        self.context.position = command.time
        t = self.context.origin + command.time
        event = command.event
        if event is None:
            self.stop(t)
        elif isinstance(event, NoteOn):
            self.piano.key_down(event.note, event.velocity, t)
        elif isinstance(event, NoteOff):
            if self.piano.key_up(event.note, t) is None and self.piano.loaded:
                _LOGGER.warning("Note off for %d at %.3fs has no open note", event.note, event.time)
        else:
            self.piano.set_pedal(event.value, t)
