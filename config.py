"""Piano configuration: validated settings plus JSON persistence in the user's config dir.

Everything here is checked before any sample is loaded, so a bad velocity
count or an inverted note range never reaches the buffer store.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from core import get_minmax_notes
from errors import InvalidConfigError
from models import Component

_LOGGER = logging.getLogger("pianosampler.config")

CONFIG_DIR = Path.home() / ".pianosampler"
CONFIG_PATH = CONFIG_DIR / "config.json"


class ComponentVolumes(BaseModel):
    """Output level of each instrument component in decibels."""

    strings: float = Field(0.0, ge=-96.0, le=12.0, description="Strings volume (dB)")
    harmonics: float = Field(0.0, ge=-96.0, le=12.0, description="Harmonics volume (dB)")
    pedal: float = Field(0.0, ge=-96.0, le=12.0, description="Pedal noise volume (dB)")
    keybed: float = Field(0.0, ge=-96.0, le=12.0, description="Keybed click volume (dB)")

    def for_component(self, component: Component) -> float:
        return getattr(self, component.value)


class PianoConfig(BaseModel):
    """Configuration for one sampled piano.

    Attributes:
        url: Base location of the Salamander sample files.
        velocities: Number of recorded velocity layers to load (1-16).
        min_note: Lowest MIDI note to load samples for.
        max_note: Highest MIDI note to load samples for.
        pedal: Whether pedal noise samples are loaded and played.
        keybed: Whether keybed click samples are loaded and played.
        max_polyphony: Key strikes allowed to ring at once before new ones are dropped.
        volume: Per-component output level.
        seed: Seed for the playback jitter; None draws a fresh one.
        detune_cents: Random detune range applied to each string strike.
    """

    url: str = Field("samples/", description="Base url or directory of the samples")
    velocities: int = Field(1, ge=1, le=16, description="Recorded velocity layers to use")
    min_note: int = Field(21, ge=0, le=127, description="Lowest note to load")
    max_note: int = Field(108, ge=0, le=127, description="Highest note to load")
    pedal: bool = Field(True, description="Play pedal noise samples")
    keybed: bool = Field(False, description="Play keybed click samples")
    max_polyphony: int = Field(32, ge=1, le=512, description="Maximum ringing strikes")
    volume: ComponentVolumes = Field(default_factory=ComponentVolumes)
    seed: Optional[int] = Field(None, description="Jitter seed")
    detune_cents: float = Field(0.0, ge=0.0, le=50.0, description="Random detune range")

    @model_validator(mode='after')
    def _check_range(self) -> 'PianoConfig':
        if self.min_note > self.max_note:
            raise ValueError(f"min_note ({self.min_note}) must not exceed max_note ({self.max_note})")
        return self

    @classmethod
    def create(cls, **values: Any) -> 'PianoConfig':
        """Validate *values*, raising :class:`InvalidConfigError` instead of pydantic's error."""
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise InvalidConfigError(str(e)) from e

    @classmethod
    def from_octaves(cls, from_octave: int, to_octave: int, **values: Any) -> 'PianoConfig':
        min_note, max_note = get_minmax_notes(from_octave, to_octave)
        return cls.create(min_note=min_note, max_note=max_note, **values)


def load_config(path: Union[str, Path, None] = None) -> PianoConfig:
    config_path = Path(path) if path is not None else CONFIG_PATH
    if not config_path.exists():
        _LOGGER.info("No config at %s, using defaults", config_path)
        return PianoConfig()
    try:
        with open(config_path, 'r') as f: data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidConfigError(f"Could not read config {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise InvalidConfigError(f"Config {config_path} must hold a JSON object")
    return PianoConfig.create(**data)


def save_config(config: PianoConfig, path: Union[str, Path, None] = None) -> Path:
    config_path = Path(path) if path is not None else CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f: json.dump(config.model_dump(), f, indent=4)
    return config_path
