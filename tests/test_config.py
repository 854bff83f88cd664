import json

import pytest

from config import ComponentVolumes, PianoConfig, load_config, save_config
from errors import InvalidConfigError
from models import Component


def test_defaults():
    config = PianoConfig()
    assert config.velocities == 1
    assert (config.min_note, config.max_note) == (21, 108)
    assert config.pedal and not config.keybed
    assert config.volume.for_component(Component.HARMONICS) == 0.0


@pytest.mark.parametrize("values", [
    {"velocities": 0},
    {"velocities": 17},
    {"min_note": 80, "max_note": 60},
    {"max_polyphony": 0},
    {"volume": {"strings": 40.0}},
])
def test_invalid_values_raise_invalid_config(values):
    with pytest.raises(InvalidConfigError):
        PianoConfig.create(**values)


def test_invalid_config_is_a_value_error():
    with pytest.raises(ValueError):
        PianoConfig.create(velocities=99)


def test_from_octaves():
    config = PianoConfig.from_octaves(4, 5, velocities=4)
    assert (config.min_note, config.max_note) == (60, 72)
    assert config.velocities == 4
    with pytest.raises(InvalidConfigError):
        PianoConfig.from_octaves(5, 4)


def test_save_and_load_round_trip(tmp_path):
    config = PianoConfig.create(velocities=5, keybed=True, seed=7,
                                volume=ComponentVolumes(pedal=-12.0))
    path = save_config(config, tmp_path / "nested" / "config.json")
    assert json.loads(path.read_text())["velocities"] == 5
    assert load_config(path) == config


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(tmp_path / "absent.json") == PianoConfig()


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"velocities": 40}'])
def test_bad_file_raises(tmp_path, content):
    path = tmp_path / "config.json"
    path.write_text(content)
    with pytest.raises(InvalidConfigError):
        load_config(path)
