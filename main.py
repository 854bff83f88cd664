#!/usr/bin/env python3
"""Command line entry: render a MIDI score through the sampled piano, or list the samples it needs."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from backends import OfflineRenderer
from config import PianoConfig, load_config, save_config
from core import MidiParser, get_minmax_notes, sample_url
from errors import PianoError
from piano import Piano
from timeline import Timeline

_LOGGER = logging.getLogger("pianosampler.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pianosampler")
    parser.add_argument("--config", type=str, default=None, help="JSON config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_piano_options(p: argparse.ArgumentParser):
        p.add_argument("--samples", type=str, default=None, help="Sample directory or base url")
        p.add_argument("--velocities", type=int, default=None)
        p.add_argument("--octaves", type=int, nargs=2, metavar=("FROM", "TO"), default=None)
        p.add_argument("--pedal", action=argparse.BooleanOptionalAction, default=None)
        p.add_argument("--keybed", action=argparse.BooleanOptionalAction, default=None)
        p.add_argument("--seed", type=int, default=None)

    render = sub.add_parser("render", help="Render a MIDI file to WAV.")
    render.add_argument("midi", type=str)
    render.add_argument("--output", type=str, default="performance.wav")
    add_piano_options(render)

    samples = sub.add_parser("samples", help="List the sample files a configuration loads.")
    add_piano_options(samples)

    save = sub.add_parser("save-config", help="Write the resulting configuration as JSON.")
    save.add_argument("path", type=str, nargs="?", default=None)
    add_piano_options(save)
    return parser


def resolve_config(args: argparse.Namespace) -> PianoConfig:
    config = load_config(args.config) if args.config else PianoConfig()
    values = config.model_dump()
    if args.samples is not None: values['url'] = args.samples
    if args.velocities is not None: values['velocities'] = args.velocities
    if args.pedal is not None: values['pedal'] = args.pedal
    if args.keybed is not None: values['keybed'] = args.keybed
    if args.seed is not None: values['seed'] = args.seed
    if args.octaves is not None:
        values['min_note'], values['max_note'] = get_minmax_notes(*args.octaves)
    return PianoConfig.create(**values)


def render_score(config: PianoConfig, midi_path: str, output: str) -> str:
    score = MidiParser.parse(midi_path)
    renderer = OfflineRenderer()
    piano = Piano(config, renderer)
    timeline = Timeline(piano)
    timeline.load_score(score)
    asyncio.run(piano.load())
    timeline.start()
    timeline.run()
    path = renderer.save(output)
    _LOGGER.info("Wrote %s (%.2fs, %d triggers)", path, timeline.context.duration, len(renderer.triggers))
    return str(path)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        config = resolve_config(args)
        if args.command == "render":
            print(render_score(config, args.midi, args.output))
        elif args.command == "samples":
            for sample_id in sorted(Piano(config).sample_ids()):
                print(sample_url(config.url, sample_id))
        elif args.command == "save-config":
            print(save_config(config, args.path))
        return 0
    except PianoError as e:
        _LOGGER.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
