"""Audio output backends: the trigger interface the piano drives, plus recording and offline mixing."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import numpy as np
import soundfile as sf

from buffers import SampleBuffer

_LOGGER = logging.getLogger("pianosampler.backends")

SAMPLE_RATE = 44_100


class AudioBackend(Protocol):
    """Schedules buffer playback on an audio clock measured in seconds."""

    def now(self) -> float: ...

    async def resume(self) -> None: ...

    def start(self, buffer: SampleBuffer, time: float, gain: float,
              rate: float = 1.0, tag: str = "") -> int: ...

    def stop(self, handle: int, time: float) -> None: ...

    def stop_all(self, time: Optional[float] = None) -> None: ...


@dataclass
class Trigger:
    """One playback started on a backend; stop_time stays None while it rings."""
    handle: int
    tag: str
    time: float
    gain: float
    rate: float
    buffer: SampleBuffer
    stop_time: Optional[float] = None


class RecordingBackend:
    """Keeps every start/stop call instead of producing sound."""

    def __init__(self, clock: float = 0.0):
        self.clock = clock
        self.unlocked = False
        self.triggers: List[Trigger] = []
        self._by_handle: Dict[int, Trigger] = {}

    def now(self) -> float:
        return self.clock

    async def resume(self) -> None:
        self.unlocked = True

    def start(self, buffer, time, gain, rate=1.0, tag=""):
        trigger = Trigger(len(self.triggers) + 1, tag, time, gain, rate, buffer)
        self.triggers.append(trigger)
        self._by_handle[trigger.handle] = trigger
        return trigger.handle

    def stop(self, handle, time):
        trigger = self._by_handle.get(handle)
        if trigger is None: return
        if trigger.stop_time is None or time < trigger.stop_time:
            trigger.stop_time = max(time, trigger.time)

    def stop_all(self, time=None):
        t = self.now() if time is None else time
        for trigger in self.triggers:
            if trigger.stop_time is None: self.stop(trigger.handle, t)

    def tagged(self, prefix: str) -> List[Trigger]:
        return [t for t in self.triggers if t.tag.startswith(prefix)]


class OfflineRenderer(RecordingBackend):
    """Mixes the recorded triggers into a mono float32 signal, faster than real time."""

    def __init__(self, sample_rate: int = SAMPLE_RATE, release: float = 0.4):
        super().__init__()
        self.sample_rate = sample_rate
        self.release = release
        self.unlocked = True

    def render(self, duration: Optional[float] = None) -> np.ndarray:
        voices = [self._voice_signal(t) for t in self.triggers]
        end = max((int(round(t.time * self.sample_rate)) + len(sig)
                   for t, sig in zip(self.triggers, voices)), default=0)
        if duration is not None:
            end = int(round(duration * self.sample_rate))
        mix = np.zeros(end, dtype=np.float32)
        for trigger, signal in zip(self.triggers, voices):
            offset = int(round(trigger.time * self.sample_rate))
            if offset >= end or not len(signal): continue
            chunk = signal[:end - offset]
            mix[offset:offset + len(chunk)] += chunk
        peak = float(np.max(np.abs(mix))) if mix.size else 0.0
        if peak > 1.0:
            _LOGGER.info("Normalizing mix with peak %.2f", peak)
            mix /= peak
        return mix

    def save(self, path: Union[str, Path], duration: Optional[float] = None) -> Path:
        target = Path(path)
        sf.write(str(target), self.render(duration), self.sample_rate)
        return target

    def _voice_signal(self, trigger: Trigger) -> np.ndarray:
        data = trigger.buffer.data
        if not len(data):
            return np.zeros(0, dtype=np.float32)
        step = trigger.rate * trigger.buffer.sample_rate / self.sample_rate
        positions = np.arange(0.0, len(data), step)
        signal = np.interp(positions, np.arange(len(data)), data).astype(np.float32) * trigger.gain
        if trigger.stop_time is not None:
            stop = max(0, int(round((trigger.stop_time - trigger.time) * self.sample_rate)))
            fade_len = int(round(self.release * self.sample_rate))
            if stop < len(signal):
                tail = signal[stop:stop + fade_len]
                tail *= np.linspace(1.0, 0.0, len(tail), dtype=np.float32)
                signal = signal[:stop + len(tail)]
        return signal
