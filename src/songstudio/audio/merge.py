"""
Audio Merge Utility
Sample-accurate PCM concatenation, overlay and slicing with 16-bit WAV output
"""

import asyncio
import io
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, List, Optional, Tuple

import numpy as np
import soundfile as sf
from pydantic import BaseModel, ConfigDict

from ..core.config import get_settings
from ..core.logging import audio_logger
from ..core.result import Result, ErrorKind

settings = get_settings()

Downloader = Callable[[str], Awaitable[Result[bytes]]]


class DecodedAudio(BaseModel):
    """Decoded PCM buffer, shape (frames, channels), float32"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return self.samples.shape[1]

    @property
    def frames(self) -> int:
        return self.samples.shape[0]


class EncodedAudio(BaseModel):
    """Encoded WAV file ready for upload"""
    data: bytes
    sample_rate: int
    channels: int
    frames: int
    content_type: str = "audio/wav"

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0


class Placement(BaseModel):
    """A take positioned on the song timeline"""
    url: str
    start_time: float


class DecodeContext:
    """
    Scoped decode resources for one merge operation.

    Owns the worker pool that runs blocking decode/encode calls; it is shut
    down when the context exits, on success and on error alike.
    """

    def __init__(self, max_workers: int = 2):
        self._executor: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers

    @property
    def closed(self) -> bool:
        return self._executor is None

    async def __aenter__(self) -> "DecodeContext":
        self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="audio-decode")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    async def run(self, func, *args):
        if self._executor is None:
            raise RuntimeError("Decode context is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def decode(self, payload: bytes) -> DecodedAudio:
        samples, sample_rate = await self.run(_decode_bytes, payload)
        return DecodedAudio(samples=samples, sample_rate=sample_rate)

    async def encode(self, samples: np.ndarray, sample_rate: int) -> bytes:
        return await self.run(encode_wav_pcm16, samples, sample_rate)


def _decode_bytes(payload: bytes) -> Tuple[np.ndarray, int]:
    samples, sample_rate = sf.read(io.BytesIO(payload), dtype="float32", always_2d=True)
    return samples, sample_rate


def quantize_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] then scale negatives by 0x8000 and positives by 0x7FFF"""
    clipped = np.clip(samples.astype(np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    # Truncate toward zero like an integer view assignment
    return np.trunc(scaled).astype(np.int16)


def encode_wav_pcm16(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode (frames, channels) float samples as 16-bit PCM WAV"""
    buffer = io.BytesIO()
    sf.write(buffer, quantize_pcm16(samples), sample_rate, format="WAV", subtype=settings.MERGE_OUTPUT_SUBTYPE)
    return buffer.getvalue()


def expand_channels(samples: np.ndarray, channels: int) -> np.ndarray:
    """Pad missing channels with copies of channel 0"""
    current = samples.shape[1]
    if current >= channels:
        return samples
    filler = np.repeat(samples[:, :1], channels - current, axis=1)
    return np.concatenate([samples, filler], axis=1)


def concatenate_decoded(segments: List[DecodedAudio]) -> Tuple[np.ndarray, int]:
    """Append segments in order using the first segment's sample rate"""
    sample_rate = segments[0].sample_rate
    channels = max(segment.channels for segment in segments)

    mismatched = [segment.sample_rate for segment in segments if segment.sample_rate != sample_rate]
    if mismatched:
        # Not resampled: playback speed of these segments will be off
        audio_logger.logger.warning(
            "Merging segments with mismatched sample rates",
            expected=sample_rate,
            found=sorted(set(mismatched))
        )

    parts = [expand_channels(segment.samples, channels) for segment in segments]
    return np.concatenate(parts, axis=0), sample_rate


async def _download_and_decode(
    urls: List[str],
    download: Downloader,
    context: DecodeContext
) -> List[Tuple[int, DecodedAudio]]:
    decoded: List[Tuple[int, DecodedAudio]] = []

    # Downloads overlap; results come back in input order
    payloads = await asyncio.gather(*(download(url) for url in urls))

    for index, (url, payload) in enumerate(zip(urls, payloads)):
        if not payload.success:
            audio_logger.log_segment_skipped(url, index, payload.error)
            continue

        try:
            segment = await context.decode(payload.data)
        except (sf.LibsndfileError, RuntimeError, ValueError) as e:
            audio_logger.log_segment_skipped(url, index, f"decode failed: {e}")
            continue

        if segment.frames == 0:
            audio_logger.log_segment_skipped(url, index, "empty audio")
            continue

        decoded.append((index, segment))

    return decoded


async def merge_audio_segments(
    urls: List[str],
    download: Downloader,
    context: Optional[DecodeContext] = None
) -> Result[EncodedAudio]:
    """
    Download, decode and concatenate segments into one 16-bit WAV.

    Segments that fail to download or decode are skipped; the merge fails
    only when nothing decodes.
    """
    if not urls:
        return Result.err("No audio segments to merge", ErrorKind.INPUT)

    if context is not None:
        return await _merge(urls, download, context)

    async with DecodeContext() as scoped:
        return await _merge(urls, download, scoped)


async def _merge(urls: List[str], download: Downloader, context: DecodeContext) -> Result[EncodedAudio]:
    start_time = time.time()
    audio_logger.log_processing_start(operation="MergeAudioSegments", segments=len(urls))

    decoded = await _download_and_decode(urls, download, context)
    if not decoded:
        audio_logger.log_processing_error(
            operation="MergeAudioSegments",
            error="No segments could be decoded",
            segments=len(urls)
        )
        return Result.err("None of the audio segments could be decoded", ErrorKind.TRANSIENT)

    merged, sample_rate = concatenate_decoded([segment for _, segment in decoded])
    data = await context.encode(merged, sample_rate)

    audio_logger.log_processing_complete(
        operation="MergeAudioSegments",
        duration_ms=(time.time() - start_time) * 1000,
        segments_used=len(decoded),
        segments_skipped=len(urls) - len(decoded),
        sample_rate=sample_rate
    )

    return Result.ok(EncodedAudio(
        data=data,
        sample_rate=sample_rate,
        channels=merged.shape[1],
        frames=merged.shape[0]
    ))


async def overlay_at_offsets(
    placements: List[Placement],
    download: Downloader,
    offset_ms: float = 0.0,
    total_duration: Optional[float] = None
) -> Result[EncodedAudio]:
    """
    Mix takes onto one timeline at their start times.

    Overlapping takes are summed and then clamped on encode. The offset
    shifts every take (negative values pull takes earlier, never before 0).
    """
    if not placements:
        return Result.err("No recordings to assemble", ErrorKind.INPUT)

    start_time = time.time()
    audio_logger.log_processing_start(operation="OverlayTakes", takes=len(placements))

    async with DecodeContext() as context:
        decoded = await _download_and_decode(
            [placement.url for placement in placements], download, context
        )
        if not decoded:
            return Result.err("None of the recordings could be decoded", ErrorKind.TRANSIENT)

        sample_rate = decoded[0][1].sample_rate
        channels = max(segment.channels for _, segment in decoded)

        starts = []
        end_frame = 0
        for index, segment in decoded:
            start_seconds = max(0.0, placements[index].start_time + offset_ms / 1000.0)
            start_frame = int(round(start_seconds * sample_rate))
            starts.append(start_frame)
            end_frame = max(end_frame, start_frame + segment.frames)

        if total_duration:
            end_frame = max(end_frame, int(round(total_duration * sample_rate)))

        timeline = np.zeros((end_frame, channels), dtype=np.float32)
        for (index, segment), start_frame in zip(decoded, starts):
            samples = expand_channels(segment.samples, channels)
            timeline[start_frame:start_frame + segment.frames] += samples

        data = await context.encode(timeline, sample_rate)

    audio_logger.log_processing_complete(
        operation="OverlayTakes",
        duration_ms=(time.time() - start_time) * 1000,
        takes_used=len(decoded)
    )

    return Result.ok(EncodedAudio(
        data=data,
        sample_rate=sample_rate,
        channels=channels,
        frames=end_frame
    ))


async def slice_segments(
    url: str,
    bounds: List[Tuple[float, float]],
    download: Downloader
) -> Result[List[Optional[EncodedAudio]]]:
    """Cut one track into WAV segments; empty ranges yield None"""
    payload = await download(url)
    if not payload.success:
        return payload.propagate()

    async with DecodeContext() as context:
        try:
            source = await context.decode(payload.data)
        except (sf.LibsndfileError, RuntimeError, ValueError) as e:
            return Result.err(f"Could not decode {url}: {e}", ErrorKind.INPUT)

        segments: List[Optional[EncodedAudio]] = []
        for start, end in bounds:
            start_frame = int(np.floor(start * source.sample_rate))
            end_frame = min(int(np.floor(end * source.sample_rate)), source.frames)
            if end_frame - start_frame <= 0:
                segments.append(None)
                continue

            piece = source.samples[start_frame:end_frame]
            data = await context.encode(piece, source.sample_rate)
            segments.append(EncodedAudio(
                data=data,
                sample_rate=source.sample_rate,
                channels=source.channels,
                frames=piece.shape[0]
            ))

    return Result.ok(segments)
