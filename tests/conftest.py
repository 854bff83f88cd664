import asyncio

import numpy as np
import pytest

from backends import RecordingBackend
from buffers import BufferStore, SampleBuffer
from config import PianoConfig
from piano import Piano


class FixedRandomizer:
    """Deterministic stand-in: always the top of the range, always the first option."""

    def between(self, low, high):
        return high

    def jittered_gain(self, base_gain, low, high):
        return base_gain * high

    def jittered_rate(self, base_rate, cents):
        return base_rate

    def choice(self, options):
        return options[0]


class FakeDecoder:
    def __init__(self, fail_on=None):
        self.fail_on = set(fail_on or [])
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        if any(url.endswith(f"/{name}.mp3") or url == f"{name}.mp3" for name in self.fail_on):
            raise OSError(f"cannot decode {url}")
        return SampleBuffer(np.full(441, 0.1, dtype=np.float32), 44_100)


@pytest.fixture
def randomizer():
    return FixedRandomizer()


@pytest.fixture
def decoder_factory():
    return FakeDecoder


@pytest.fixture
def decoder():
    return FakeDecoder()


@pytest.fixture
def make_piano(decoder, randomizer):
    # Piano on a recording backend with fake samples; loaded unless told otherwise
    def factory(load=True, **values):
        config = PianoConfig.create(**{"url": "samples/", **values})
        backend = RecordingBackend()
        store = BufferStore(config.url, decoder=decoder)
        piano = Piano(config, backend, store, randomizer)
        if load:
            asyncio.run(piano.load())
        return piano
    return factory


@pytest.fixture
def piano(make_piano):
    return make_piano(velocities=3, min_note=48, max_note=72)
