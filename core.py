"""Sample naming tables, note range math, velocity layer selection and MIDI score decoding."""

import bisect
import logging
import math
import mido
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from errors import InvalidConfigError, MalformedScoreError
from models import Component, ControlChange, Score, ScoreNote, ScoreTrack

_LOGGER = logging.getLogger("pianosampler.core")


# ---------------------------------------------------------------------------
# Sample library tables  (Salamander Grand file layout, DO NOT CHANGE)
# ---------------------------------------------------------------------------

AUDIO_EXTENSION = ".mp3"

# velocity depth -> recorded Salamander velocities (1–16 scale)
VELOCITIES_MAP: Dict[int, List[int]] = {
    1: [8],
    2: [6, 12],
    3: [1, 7, 15],
    4: [1, 5, 10, 15],
    5: [1, 4, 8, 12, 16],
    6: [1, 3, 7, 10, 13, 16],
    7: [1, 3, 6, 9, 11, 13, 16],
    8: [1, 3, 5, 7, 9, 11, 13, 16],
    9: [1, 3, 5, 7, 9, 11, 13, 15, 16],
    10: [1, 2, 3, 5, 7, 9, 11, 13, 15, 16],
    11: [1, 2, 3, 5, 7, 9, 11, 13, 14, 15, 16],
    12: [1, 2, 3, 4, 5, 7, 9, 11, 13, 14, 15, 16],
    13: [1, 2, 3, 4, 5, 7, 9, 11, 12, 13, 14, 15, 16],
    14: [1, 2, 3, 4, 5, 6, 7, 9, 11, 12, 13, 14, 15, 16],
    15: [1, 2, 3, 4, 5, 6, 7, 9, 10, 11, 12, 13, 14, 15, 16],
    16: [1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15, 16],
}

# A0, C1, D#1, F#1, A1 ... C8: strings are recorded every third semitone
ALL_NOTES: List[int] = [
    21, 24, 27, 30, 33, 36, 39, 42, 45, 48, 51, 54, 57, 60, 63, 66, 69, 72, 75,
    78, 81, 84, 87, 90, 93, 96, 99, 102, 105, 108,
]

HARMONICS_NOTES: List[int] = [
    21, 24, 27, 30, 33, 36, 39, 42, 45, 48, 51, 54, 57, 60, 63, 66, 69, 72, 75,
    78, 81, 84, 87,
]

PEDAL_SAMPLES: List[str] = ["pedalD1", "pedalD2", "pedalU1", "pedalU2"]

LOWEST_KEY = 21   # A0
HIGHEST_KEY = 108  # C8

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
_FLATS = {"Db": "C#", "Eb": "D#", "Gb": "F#", "Ab": "G#", "Bb": "A#", "Cb": "B", "Fb": "E"}


def pitch_to_name(pitch: int) -> str:
    return f"{NOTE_NAMES[pitch % 12]}{(pitch // 12) - 1}"


def name_to_pitch(name: str) -> int:
    """Parse a chromatic pitch name such as ``C4``, ``F#3`` or ``Bb2`` into a MIDI number."""
    name = name.strip()
    split = 2 if len(name) > 1 and name[1] in "#b" else 1
    letter, octave = name[:split], name[split:]
    if letter[0].islower(): letter = letter[0].upper() + letter[1:]
    # Cb4 is B3, not B4
    octave_shift = {"Cb": -1}.get(letter, 0)
    letter = _FLATS.get(letter, letter)
    if letter not in NOTE_NAMES:
        raise ValueError(f"Unknown pitch name: {name!r}")
    try:
        octave_num = int(octave)
    except ValueError:
        raise ValueError(f"Unknown pitch name: {name!r}") from None
    return (octave_num + 1 + octave_shift) * 12 + NOTE_NAMES.index(letter)


def to_midi(note) -> int:
    return name_to_pitch(note) if isinstance(note, str) else int(note)


def _file_stem(pitch: int) -> str:
    return pitch_to_name(pitch).replace("#", "s")


def get_notes_url(midi: int, velocity: int) -> str:
    return f"{_file_stem(midi)}v{velocity}"


def get_harmonics_url(midi: int) -> str:
    return f"harmS{_file_stem(midi)}"


def get_releases_url(midi: int) -> str:
    return f"rel{midi - 20}"


def get_pedal_url(layer: int) -> str:
    return PEDAL_SAMPLES[layer]


def sample_url(base_url: str, sample_id: str) -> str:
    if base_url and not base_url.endswith("/"):
        base_url += "/"
    return f"{base_url}{sample_id}{AUDIO_EXTENSION}"


# ---------------------------------------------------------------------------
# Range math
# ---------------------------------------------------------------------------

def notes_in_range(component: Component, min_note: int, max_note: int) -> List[int]:
    """Ascending notes that have a recording for *component* between the bounds."""
    if component is Component.STRINGS:
        anchors = ALL_NOTES
    elif component is Component.HARMONICS:
        anchors = HARMONICS_NOTES
    elif component is Component.KEYBED:
        anchors = range(LOWEST_KEY, HIGHEST_KEY + 1)
    else:
        return []
    return [note for note in anchors if min_note <= note <= max_note]


def get_minmax_notes(from_octave: int, to_octave: int) -> Tuple[int, int]:
    """Return (min_note, max_note) for an octave span; octaves are anchored on C."""
    if not 0 <= from_octave <= 7 or not 1 <= to_octave <= 8:
        raise InvalidConfigError(
            f"Octave span must be 0–7 to 1–8, got ({from_octave}, {to_octave})")
    min_note = 21 if from_octave == 0 else (from_octave + 1) * 12
    max_note = (to_octave + 1) * 12
    return min_note, max_note


def in_harmonics_range(note: int) -> bool:
    return HARMONICS_NOTES[0] <= note <= HARMONICS_NOTES[-1]


def nearest_anchor(note: int, anchors: Sequence[int]) -> Optional[Tuple[int, float]]:
    """Closest recorded anchor to *note* and the playback rate that repitches it."""
    if not anchors:
        return None
    idx = bisect.bisect_left(anchors, note)
    if idx < len(anchors) and anchors[idx] == note:
        return note, 1.0
    candidates = [anchors[i] for i in (idx - 1, idx) if 0 <= i < len(anchors)]
    anchor = min(candidates, key=lambda a: (abs(a - note), a))
    return anchor, 2.0 ** ((note - anchor) / 12.0)


# ---------------------------------------------------------------------------
# Naming and velocity selection
# ---------------------------------------------------------------------------

class SampleNamingTable:
    """Map (note, component, velocity layer) to a Salamander sample id."""

    def __init__(self, velocities: int = 1):
        if velocities not in VELOCITIES_MAP:
            raise InvalidConfigError(f"velocities must be 1–16, got {velocities}")
        self.velocities = velocities
        self.layer_velocities = VELOCITIES_MAP[velocities]

    def name_for(self, note: Optional[int], component: Component, layer: int = 0) -> Optional[str]:
        if component is Component.PEDAL:
            return get_pedal_url(layer) if 0 <= layer < len(PEDAL_SAMPLES) else None
        if note is None:
            return None
        if component is Component.STRINGS:
            if note not in ALL_NOTES or not 0 <= layer < len(self.layer_velocities):
                return None
            return get_notes_url(note, self.layer_velocities[layer])
        if component is Component.HARMONICS:
            return get_harmonics_url(note) if note in HARMONICS_NOTES else None
        if component is Component.KEYBED:
            return get_releases_url(note) if LOWEST_KEY <= note <= HIGHEST_KEY else None
        return None


class VelocitySelector:
    """Choose the nearest recorded velocity layer; only strings are velocity layered."""

    def __init__(self, velocities: int = 1):
        self.velocities = velocities

    def layer_count(self, component: Component) -> int:
        return self.velocities if component is Component.STRINGS else 1

    def select(self, component: Component, velocity: float) -> int:
        if velocity is None or isinstance(velocity, bool) or not isinstance(velocity, (int, float)):
            raise ValueError(f"velocity must be a number, got {velocity!r}")
        if math.isnan(velocity):
            raise ValueError("velocity must not be NaN")
        top = self.layer_count(component) - 1
        if velocity <= 0: return 0
        if velocity >= 1: return top
        return min(top, max(0, int(math.floor(velocity * top + 0.5))))


# ---------------------------------------------------------------------------
# MIDI file decoding
# ---------------------------------------------------------------------------

class GlobalTickMap:
    """Converts absolute MIDI ticks to wall-clock seconds using tempo changes."""

    def __init__(self, midi_file: mido.MidiFile):
        self.ticks_per_beat = midi_file.ticks_per_beat or 480
        self._entries: List[Tuple[int, float, int]] = []
        self.tempos: List[int] = []
        self._build(midi_file)

    def _build(self, midi_file: mido.MidiFile):
        merged = mido.merge_tracks(midi_file.tracks)
        t = 0.0
        tick = 0
        tempo = 500_000
        self._entries.append((0, 0.0, tempo))
        acc = 0
        for msg in merged:
            acc += msg.time
            t += mido.tick2second(acc - tick, self.ticks_per_beat, tempo)
            tick = acc
            if msg.type == 'set_tempo':
                tempo = msg.tempo
                self.tempos.append(tempo)
                self._entries.append((tick, t, tempo))

    def tick_to_time(self, target_tick: int) -> float:
        last_tick, last_time, tempo = self._entries[0]
        for e_tick, e_time, e_tempo in self._entries:
            if target_tick >= e_tick:
                last_tick, last_time, tempo = e_tick, e_time, e_tempo
            else:
                break
        return last_time + mido.tick2second(
            target_tick - last_tick, self.ticks_per_beat, tempo)


class MidiParser:
    """Decode a MIDI file into a :class:`Score` (notes, CC changes and tempo markings)."""

    MIN_DURATION = 0.01

    @staticmethod
    def parse(filepath: str) -> Score:
        try:
            mid = mido.MidiFile(filepath)
        except (OSError, EOFError, ValueError) as e:
            raise MalformedScoreError(f"Could not read MIDI file: {e}") from e
        return MidiParser.parse_midi(mid)

    @staticmethod
    def parse_midi(mid: mido.MidiFile) -> Score:
        gmap = GlobalTickMap(mid)
        tracks: List[ScoreTrack] = []

        for i, track in enumerate(mid.tracks):
            name = f"Track {i}"
            notes: List[ScoreNote] = []
            control_changes: Dict[int, List[ControlChange]] = defaultdict(list)
            open_notes: Dict[int, List[Tuple[int, int]]] = defaultdict(list)
            abs_tick = 0

            for msg in track:
                abs_tick += msg.time
                if msg.type == 'track_name':
                    name = msg.name

                if msg.type == 'note_on' and msg.velocity > 0:
                    open_notes[msg.note].append((abs_tick, msg.velocity))
                elif (msg.type == 'note_off'
                      or (msg.type == 'note_on' and msg.velocity == 0)):
                    if open_notes[msg.note]:
                        start_tick, vel = open_notes[msg.note].pop(0)
                        s = gmap.tick_to_time(start_tick)
                        dur = gmap.tick_to_time(abs_tick) - s
                        if dur > MidiParser.MIN_DURATION:
                            notes.append(ScoreNote(msg.note, vel / 127.0, s, dur))

                if msg.type == 'control_change':
                    t = gmap.tick_to_time(abs_tick)
                    control_changes[msg.control].append(ControlChange(t, msg.value))

            notes.sort(key=lambda n: n.time)
            if notes or control_changes:
                tracks.append(ScoreTrack(name, notes, dict(control_changes)))

        tempos = [mido.tempo2bpm(t) for t in gmap.tempos]
        _LOGGER.debug("Decoded %d tracks, %d tempo markings", len(tracks), len(tempos))
        return Score(tracks, tempos)
