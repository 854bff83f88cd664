"""Loaded sample buffers keyed by sample id, with all-or-nothing asynchronous bulk loading."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import unquote, urlparse

import numpy as np
import soundfile as sf

from core import sample_url
from errors import SampleLoadError

_LOGGER = logging.getLogger("pianosampler.buffers")


@dataclass(frozen=True)
class SampleBuffer:
    """Decoded mono audio; immutable once loaded."""
    data: np.ndarray
    sample_rate: int

    @property
    def duration(self) -> float:
        return len(self.data) / self.sample_rate if self.sample_rate else 0.0


Decoder = Callable[[str], SampleBuffer]


def decode_file(url: str) -> SampleBuffer:
    """Read a local sample file (plain path or ``file://`` url) with soundfile."""
    parsed = urlparse(url)
    if parsed.scheme in ('http', 'https'):
        raise SampleLoadError(url, "remote sample libraries are not supported, download them first")
    path = Path(unquote(parsed.path)) if parsed.scheme == 'file' else Path(url)
    data, sample_rate = sf.read(str(path), dtype='float32', always_2d=True)
    mono = data.mean(axis=1).astype(np.float32)
    mono.setflags(write=False)
    return SampleBuffer(mono, int(sample_rate))


class BufferStore:
    """Owns every loaded sample. Written during loads, read-only during playback."""

    def __init__(self, base_url: str = "", decoder: Optional[Decoder] = None, max_concurrency: int = 8):
        self.base_url = base_url
        self.decoder = decoder or decode_file
        self.max_concurrency = max_concurrency
        self._buffers: Dict[str, SampleBuffer] = {}

    def __contains__(self, sample_id: str) -> bool:
        return sample_id in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def get(self, sample_id: Optional[str]) -> Optional[SampleBuffer]:
        if sample_id is None: return None
        return self._buffers.get(sample_id)

    async def load(self, sample_ids: Iterable[str]) -> int:
        """Fetch and decode every id not loaded yet; commit only if all of them succeed.

        Returns how many buffers were added. Raises :class:`SampleLoadError` for the
        first id that fails, in which case nothing from this call is kept.
        """
        missing = sorted(set(sid for sid in sample_ids if sid not in self._buffers))
        if not missing:
            return 0
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch(sample_id: str) -> SampleBuffer:
            async with semaphore:
                return await self._fetch(sample_id)

        _LOGGER.info("Loading %d samples from %s", len(missing), self.base_url or ".")
        results = await asyncio.gather(*(fetch(sid) for sid in missing), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                _LOGGER.error("Sample load failed: %s", result)
                raise result
        added = 0
        for sample_id, buffer in zip(missing, results):
            if sample_id not in self._buffers:
                self._buffers[sample_id] = buffer
                added += 1
        return added

    async def _fetch(self, sample_id: str) -> SampleBuffer:
        url = sample_url(self.base_url, sample_id)
        try:
            if inspect.iscoroutinefunction(self.decoder):
                buffer = await self.decoder(url)
            else:
                buffer = await asyncio.to_thread(self.decoder, url)
        except SampleLoadError as e:
            raise SampleLoadError(sample_id, str(e)) from e
        except Exception as e:
            raise SampleLoadError(sample_id, f"{type(e).__name__}: {e}") from e
        if buffer is None:
            raise SampleLoadError(sample_id, "decoder returned no audio")
        return buffer
