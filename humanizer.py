"""Bounded random variation applied to playback so repeated strikes never sound identical."""

import random
from typing import Optional, Sequence, TypeVar

T = TypeVar('T')


class Randomizer:
    """Seedable jitter source. Tests substitute any object with the same methods."""

    def __init__(self, seed: Optional[int] = None, rng: Optional[random.Random] = None):
        self.rng = rng if rng is not None else random.Random(seed)

    def between(self, low: float, high: float) -> float:
        return self.rng.uniform(low, high)

    def jittered_gain(self, base_gain: float, low: float, high: float) -> float:
        return base_gain * self.between(low, high)

    def jittered_rate(self, base_rate: float, cents: float) -> float:
        """Detune *base_rate* by up to ±*cents*; 0 cents leaves it untouched."""
        if cents <= 0: return base_rate
        return base_rate * 2.0 ** (self.between(-cents, cents) / 1200.0)

    def choice(self, options: Sequence[T]) -> T:
        return self.rng.choice(options)
