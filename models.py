"""Data models for scores, timeline events and voices (notes, tracks, events, voice state)."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union


class Component(Enum):
    """Recorded parts of the instrument; each has its own samples and output volume."""
    STRINGS = 'strings'
    HARMONICS = 'harmonics'
    PEDAL = 'pedal'
    KEYBED = 'keybed'


class VoiceState(Enum):
    DOWN = 'down'
    SUSTAINED = 'sustained'
    RELEASING = 'releasing'


@dataclass
class ScoreNote:
    """Single note: pitch (MIDI 0–127), velocity 0–1, start/duration in seconds."""
    pitch: int
    velocity: float
    time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.time + self.duration

    @property
    def name(self) -> str:
        from core import pitch_to_name
        return pitch_to_name(self.pitch)


@dataclass
class ControlChange:
    """Raw MIDI controller value (0–127) at *time* seconds."""
    time: float
    value: int


@dataclass
class ScoreTrack:
    """Single track of a decoded score: notes plus control changes keyed by controller number."""
    name: str
    notes: List[ScoreNote] = field(default_factory=list)
    control_changes: Dict[int, List[ControlChange]] = field(default_factory=dict)

    @property
    def note_count(self) -> int:
        return len(self.notes)

    @property
    def sustain_events(self) -> List[ControlChange]:
        return self.control_changes.get(64, [])


@dataclass
class Score:
    """Decoded score: tracks and tempo markings (bpm) in file order."""
    tracks: List[ScoreTrack] = field(default_factory=list)
    tempos: List[float] = field(default_factory=list)

    @property
    def duration(self) -> float:
        ends = [n.end_time for t in self.tracks for n in t.notes]
        ends += [cc.time for t in self.tracks for ccs in t.control_changes.values() for cc in ccs]
        return max(ends) if ends else 0.0

    def first_playable_track(self) -> Optional[ScoreTrack]:
        for track in self.tracks:
            if track.notes: return track
        return None


@dataclass(frozen=True)
class NoteOn:
    time: float
    note: int
    velocity: float = 0.8


@dataclass(frozen=True)
class NoteOff:
    time: float
    note: int


@dataclass(frozen=True)
class PedalChange:
    """Sustain pedal position normalized to 0–1 (CC64 value / 127)."""
    time: float
    value: float


TimelineEvent = Union[NoteOn, NoteOff, PedalChange]


@dataclass
class Voice:
    """One strike of a key: owns the playback handles it started, never the buffers."""
    note: int
    velocity: float
    start_time: float
    gain: float
    state: VoiceState = VoiceState.DOWN
    handles: Dict[Component, int] = field(default_factory=dict)
    release_time: Optional[float] = None
