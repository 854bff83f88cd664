"""Sampled piano: instrument components, sustain pedal, per-key voices and the Piano aggregate."""

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple, Union

from backends import AudioBackend, RecordingBackend
from buffers import BufferStore
from config import PianoConfig
from core import (SampleNamingTable, VelocitySelector, in_harmonics_range, nearest_anchor,
                  notes_in_range, to_midi)
from humanizer import Randomizer
from models import Component, Voice, VoiceState

_LOGGER = logging.getLogger("pianosampler.piano")

NoteLike = Union[int, str]

STRINGS_JITTER = (0.9, 1.0)
HARMONICS_GAIN = 0.3
KEYBED_GAIN = 0.015
KEYBED_JITTER = (0.5, 1.0)
PEDAL_GAIN = 0.1
PEDAL_JITTER = (0.5, 1.0)
PEDAL_THRESHOLD = 0.5
PREVIEW_DURATION = 0.6


def db_to_gain(db: float) -> float:
    return 10.0 ** (db / 20.0)


class Loadable(Protocol):
    enabled: bool
    loaded: bool

    def sample_ids(self) -> List[str]: ...

    async def load(self) -> None: ...


class Triggerable(Protocol):
    output: 'ComponentOutput'

    def release(self, handle: Optional[int], time: float) -> None: ...


class ComponentOutput:
    """Routes one component's playback to the backend at the component's volume.

    A sample that is not loaded is skipped without error; a live performance must
    not halt because one recording is missing.
    """

    def __init__(self, component: Component, backend: AudioBackend, store: BufferStore,
                 volume_db: float = 0.0, enabled: bool = True):
        self.component = component
        self.backend = backend
        self.store = store
        self.volume_db = volume_db
        self.enabled = enabled
        self.loaded = False

    @property
    def gain(self) -> float:
        return db_to_gain(self.volume_db)

    def play(self, sample_id: Optional[str], time: float, gain: float, rate: float = 1.0) -> Optional[int]:
        if not self.enabled or not self.loaded:
            return None
        buffer = self.store.get(sample_id)
        if buffer is None:
            _LOGGER.debug("No %s sample for %s, skipping", self.component.value, sample_id)
            return None
        return self.backend.start(buffer, time, gain * self.gain, rate, sample_id)

    def stop(self, handle: Optional[int], time: float):
        if handle is not None: self.backend.stop(handle, time)

    async def load(self, sample_ids: List[str]):
        await self.store.load(sample_ids)
        self.loaded = True


class Strings:
    """Main string recordings, one set per velocity layer, repitched from the nearest anchor."""

    def __init__(self, output: ComponentOutput, naming: SampleNamingTable, selector: VelocitySelector,
                 randomizer: Randomizer, min_note: int, max_note: int, detune_cents: float = 0.0):
        self.output = output
        self.naming = naming
        self.selector = selector
        self.randomizer = randomizer
        self.detune_cents = detune_cents
        self.anchors = notes_in_range(Component.STRINGS, min_note, max_note)

    @property
    def enabled(self) -> bool:
        return self.output.enabled

    @property
    def loaded(self) -> bool:
        return self.output.loaded

    def sample_ids(self) -> List[str]:
        return [self.naming.name_for(note, Component.STRINGS, layer)
                for layer in range(self.selector.layer_count(Component.STRINGS))
                for note in self.anchors]

    async def load(self):
        await self.output.load(self.sample_ids())

    def trigger(self, note: int, velocity: float, time: float) -> Tuple[Optional[int], float]:
        """Start the strike; returns the playback handle (None if silent) and the gain used."""
        layer = self.selector.select(Component.STRINGS, velocity)
        match = nearest_anchor(note, self.anchors)
        if match is None: return None, 0.0
        anchor, rate = match
        # with a single layer the recording carries no dynamics, so velocity scales it
        base = velocity if self.selector.layer_count(Component.STRINGS) == 1 else 1.0
        gain = self.randomizer.jittered_gain(base, *STRINGS_JITTER)
        rate = self.randomizer.jittered_rate(rate, self.detune_cents)
        handle = self.output.play(self.naming.name_for(anchor, Component.STRINGS, layer), time, gain, rate)
        return handle, gain

    def release(self, handle: Optional[int], time: float):
        self.output.stop(handle, time)


class Harmonics:
    """Sympathetic resonance recordings, played quietly alongside strikes in the lower range."""

    def __init__(self, output: ComponentOutput, naming: SampleNamingTable, min_note: int, max_note: int):
        self.output = output
        self.naming = naming
        self.anchors = notes_in_range(Component.HARMONICS, min_note, max_note)

    @property
    def enabled(self) -> bool:
        return self.output.enabled

    @property
    def loaded(self) -> bool:
        return self.output.loaded

    def sample_ids(self) -> List[str]:
        return [self.naming.name_for(note, Component.HARMONICS) for note in self.anchors]

    async def load(self):
        await self.output.load(self.sample_ids())

    def trigger(self, note: int, time: float) -> Optional[int]:
        if not in_harmonics_range(note): return None
        match = nearest_anchor(note, self.anchors)
        if match is None: return None
        anchor, rate = match
        return self.output.play(self.naming.name_for(anchor, Component.HARMONICS), time, HARMONICS_GAIN, rate)

    def release(self, handle: Optional[int], time: float):
        self.output.stop(handle, time)


class Keybed:
    """Mechanical key noise, one recording per key."""

    def __init__(self, output: ComponentOutput, naming: SampleNamingTable, randomizer: Randomizer,
                 min_note: int, max_note: int):
        self.output = output
        self.naming = naming
        self.randomizer = randomizer
        self.notes = notes_in_range(Component.KEYBED, min_note, max_note)

    @property
    def enabled(self) -> bool:
        return self.output.enabled

    @property
    def loaded(self) -> bool:
        return self.output.loaded

    def sample_ids(self) -> List[str]:
        return [self.naming.name_for(note, Component.KEYBED) for note in self.notes]

    async def load(self):
        await self.output.load(self.sample_ids())

    def trigger(self, note: int, velocity: float, time: float) -> Optional[int]:
        if note not in self.notes: return None
        gain = self.randomizer.jittered_gain(KEYBED_GAIN * velocity, *KEYBED_JITTER)
        return self.output.play(self.naming.name_for(note, Component.KEYBED), time, gain)

    def release(self, handle: Optional[int], time: float):
        # the click is short and rings out past key release
        pass


class PedalNoise:
    """Damper mechanism noise played on pedal edges; a new edge cuts the previous noise."""

    DOWN_LAYERS = (0, 1)
    UP_LAYERS = (2, 3)

    def __init__(self, output: ComponentOutput, naming: SampleNamingTable, randomizer: Randomizer):
        self.output = output
        self.naming = naming
        self.randomizer = randomizer
        self._current: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self.output.enabled

    @property
    def loaded(self) -> bool:
        return self.output.loaded

    def sample_ids(self) -> List[str]:
        return [self.naming.name_for(None, Component.PEDAL, layer)
                for layer in self.DOWN_LAYERS + self.UP_LAYERS]

    async def load(self):
        await self.output.load(self.sample_ids())

    def down(self, time: float) -> Optional[int]:
        return self._play(self.DOWN_LAYERS, time)

    def up(self, time: float) -> Optional[int]:
        return self._play(self.UP_LAYERS, time)

    def squash(self, time: float):
        self.release(self._current, time)

    def release(self, handle: Optional[int], time: float):
        self.output.stop(handle, time)
        if handle == self._current: self._current = None

    def _play(self, layers, time: float) -> Optional[int]:
        self.squash(time)
        sample_id = self.naming.name_for(None, Component.PEDAL, self.randomizer.choice(layers))
        gain = self.randomizer.jittered_gain(PEDAL_GAIN, *PEDAL_JITTER)
        self._current = self.output.play(sample_id, time, gain)
        return self._current


class PedalController:
    """Sustain pedal value (0–1); only engage/release edges matter to the voices."""

    def __init__(self, threshold: float = PEDAL_THRESHOLD):
        self.threshold = threshold
        self.value = 0.0
        self.engaged = False

    def set_value(self, value: float) -> Optional[bool]:
        """Store the normalized *value* and return the edge, if any.

        Returns True when the pedal became engaged, False when it was released and
        None when the engaged state did not change.
        """
        self.value = min(1.0, max(0.0, float(value)))
        engaged = self.value >= self.threshold
        if engaged == self.engaged:
            return None
        self.engaged = engaged
        return engaged

    def reset(self):
        self.value = 0.0
        self.engaged = False


class VoiceBank:
    """Open voices per note (most recent last) and voices held only by the pedal."""

    def __init__(self):
        self._held: Dict[int, List[Voice]] = defaultdict(list)
        self._sustained: List[Voice] = []

    @property
    def active_count(self) -> int:
        return sum(len(v) for v in self._held.values()) + len(self._sustained)

    def held(self, note: int) -> List[Voice]:
        return list(self._held.get(note, []))

    @property
    def sustained(self) -> List[Voice]:
        return list(self._sustained)

    def add(self, voice: Voice):
        self._held[voice.note].append(voice)

    def take_latest(self, note: int) -> Optional[Voice]:
        stack = self._held.get(note)
        if not stack: return None
        voice = stack.pop()
        if not stack: del self._held[note]
        return voice

    def sustain(self, voice: Voice):
        voice.state = VoiceState.SUSTAINED
        self._sustained.append(voice)

    def take_sustained(self) -> List[Voice]:
        voices, self._sustained = self._sustained, []
        return voices

    def clear(self) -> List[Voice]:
        voices = [v for stack in self._held.values() for v in stack] + self._sustained
        self._held.clear()
        self._sustained = []
        return voices


class Piano:
    """Aggregate of the four components driven by key, pedal and transport calls.

    Timeline dispatch and live preview both land here; a re-entrant lock keeps
    their state changes from interleaving.
    """

    def __init__(self, config: Optional[PianoConfig] = None, backend: Optional[AudioBackend] = None,
                 store: Optional[BufferStore] = None, randomizer: Optional[Randomizer] = None):
        self.config = config or PianoConfig()
        self.backend = backend if backend is not None else RecordingBackend()
        self.store = store if store is not None else BufferStore(self.config.url)
        self.randomizer = randomizer if randomizer is not None else Randomizer(self.config.seed)
        cfg = self.config
        naming = SampleNamingTable(cfg.velocities)
        selector = VelocitySelector(cfg.velocities)

        def output(component: Component, enabled: bool = True) -> ComponentOutput:
            return ComponentOutput(component, self.backend, self.store,
                                   cfg.volume.for_component(component), enabled)

        self.strings = Strings(output(Component.STRINGS), naming, selector, self.randomizer,
                               cfg.min_note, cfg.max_note, cfg.detune_cents)
        self.harmonics = Harmonics(output(Component.HARMONICS), naming, cfg.min_note, cfg.max_note)
        self.pedal = PedalNoise(output(Component.PEDAL, cfg.pedal), naming, self.randomizer)
        self.keybed = Keybed(output(Component.KEYBED, cfg.keybed), naming, self.randomizer,
                             cfg.min_note, cfg.max_note)
        self.pedal_controller = PedalController()
        self.voices = VoiceBank()
        self._lock = threading.RLock()
        self._loaded = False
        self._load_listeners: List[Callable[[], None]] = []

    @property
    def components(self) -> Dict[Component, Loadable]:
        return {Component.STRINGS: self.strings, Component.HARMONICS: self.harmonics,
                Component.PEDAL: self.pedal, Component.KEYBED: self.keybed}

    @property
    def loaded(self) -> bool:
        return self._loaded

    def sample_ids(self) -> Set[str]:
        ids: Set[str] = set()
        for component in self.components.values():
            if component.enabled: ids.update(component.sample_ids())
        return ids

    def on_load(self, callback: Callable[[], None]):
        if self._loaded: callback()
        else: self._load_listeners.append(callback)

    async def load(self):
        """Load every enabled component; the piano only becomes playable if all succeed."""
        if self._loaded:
            return
        enabled = [c for c in self.components.values() if c.enabled]
        await asyncio.gather(*(c.load() for c in enabled))
        self._loaded = True
        _LOGGER.info("Piano loaded (%d samples)", len(self.store))
        listeners, self._load_listeners = self._load_listeners, []
        for callback in listeners: callback()

    def set_volume(self, component: Component, db: float):
        self._triggerable(component).output.volume_db = db

    def _now(self, time: Optional[float]) -> float:
        return self.backend.now() if time is None else time

    def key_down(self, note: NoteLike, velocity: float = 0.8, time: Optional[float] = None) -> Optional[Voice]:
        midi = to_midi(note)
        t = self._now(time)
        with self._lock:
            if not self._loaded:
                _LOGGER.debug("Dropping key_down %d before load", midi)
                return None
            if self.voices.active_count >= self.config.max_polyphony:
                _LOGGER.debug("Polyphony limit reached, dropping key_down %d", midi)
                return None
            handle, gain = self.strings.trigger(midi, velocity, t)
            voice = Voice(midi, velocity, t, gain * self.strings.output.gain)
            if handle is not None: voice.handles[Component.STRINGS] = handle
            harmonic = self.harmonics.trigger(midi, t)
            if harmonic is not None: voice.handles[Component.HARMONICS] = harmonic
            click = self.keybed.trigger(midi, velocity, t)
            if click is not None: voice.handles[Component.KEYBED] = click
            self.voices.add(voice)
            return voice

    def key_up(self, note: NoteLike, time: Optional[float] = None) -> Optional[Voice]:
        midi = to_midi(note)
        t = self._now(time)
        with self._lock:
            voice = self.voices.take_latest(midi)
            if voice is None:
                if self._loaded: _LOGGER.debug("key_up %d with no open voice", midi)
                return None
            if self.pedal_controller.engaged:
                self.voices.sustain(voice)
            else:
                self._release(voice, t)
            return voice

    def set_pedal(self, value: float, time: Optional[float] = None, noise: bool = True) -> Optional[bool]:
        """Set the sustain pedal to *value* (0–1); returns the edge like :meth:`PedalController.set_value`.

        With *noise* off the pedal mechanism samples are not played, which is how
        a transport restores a pedal that was already down at its start point.
        """
        t = self._now(time)
        with self._lock:
            edge = self.pedal_controller.set_value(value)
            if edge is True:
                if self._loaded and noise: self.pedal.down(t)
            elif edge is False:
                if self._loaded and noise: self.pedal.up(t)
                for voice in self.voices.take_sustained():
                    self._release(voice, t)
            return edge

    def pedal_down(self, time: Optional[float] = None) -> Optional[bool]:
        return self.set_pedal(1.0, time)

    def pedal_up(self, time: Optional[float] = None) -> Optional[bool]:
        return self.set_pedal(0.0, time)

    def preview(self, note: NoteLike, velocity: float = 0.85,
                duration: float = PREVIEW_DURATION) -> Optional[Voice]:
        """Strike and release a key right now, outside of any timeline."""
        now = self.backend.now()
        with self._lock:
            voice = self.key_down(note, velocity, now)
            if voice is not None: self.key_up(note, now + duration)
            return voice

    def stop_all(self, time: Optional[float] = None):
        t = self._now(time)
        with self._lock:
            for voice in self.voices.clear():
                voice.state = VoiceState.RELEASING
                voice.release_time = t
            self.pedal.squash(t)
            self.pedal_controller.reset()
            self.backend.stop_all(t)

    def _release(self, voice: Voice, time: float):
        for component, handle in voice.handles.items():
            self._triggerable(component).release(handle, time)
        voice.state = VoiceState.RELEASING
        voice.release_time = time

    def _triggerable(self, component: Component) -> Triggerable:
        return getattr(self, component.value)
