"""
Unit tests for the audio merge utility
Concatenation with skipped segments, channel fill, PCM16 encoding, overlay and slicing
"""
import asyncio
import io

import numpy as np
import pytest
import soundfile as sf

from conftest import TEST_SAMPLE_RATE, make_wav, read_wav
from songstudio.audio.merge import (
    DecodeContext,
    Placement,
    encode_wav_pcm16,
    expand_channels,
    merge_audio_segments,
    overlay_at_offsets,
    quantize_pcm16,
    slice_segments
)
from songstudio.core.result import ErrorKind, Result


def downloader(files):
    """Async download function over a url -> bytes mapping; unknown URLs fail"""
    requested = []

    async def download(url):
        requested.append(url)
        if url in files:
            return Result.ok(files[url])
        return Result.err(f"Download failed for {url}: 404", ErrorKind.TRANSIENT)

    download.requested = requested
    return download


@pytest.mark.unit
class TestMergeAudioSegments:
    """Concatenation in input order"""

    @pytest.mark.asyncio
    async def test_skips_failed_segment_and_keeps_order(self):
        files = {
            "https://cdn.test/a.wav": make_wav(0.25, seconds=0.5),
            "https://cdn.test/c.wav": make_wav(-0.5, seconds=0.25),
        }
        download = downloader(files)

        result = await merge_audio_segments(
            ["https://cdn.test/a.wav", "https://cdn.test/b.wav", "https://cdn.test/c.wav"],
            download
        )

        assert result.success
        merged = result.data
        assert merged.sample_rate == TEST_SAMPLE_RATE
        assert merged.frames == int(0.75 * TEST_SAMPLE_RATE)
        assert merged.content_type == "audio/wav"
        assert merged.duration == pytest.approx(0.75)

        samples, sample_rate = read_wav(merged.data)
        split = int(0.5 * TEST_SAMPLE_RATE)
        assert sample_rate == TEST_SAMPLE_RATE
        assert np.allclose(samples[:split, 0], 0.25, atol=1e-3)
        assert np.allclose(samples[split:, 0], -0.5, atol=1e-3)
        assert download.requested == [
            "https://cdn.test/a.wav", "https://cdn.test/b.wav", "https://cdn.test/c.wav"
        ]

    @pytest.mark.asyncio
    async def test_downloads_overlap_but_order_follows_input(self):
        files = {
            "https://cdn.test/slow.wav": make_wav(0.5, seconds=0.25),
            "https://cdn.test/fast.wav": make_wav(-0.25, seconds=0.25),
        }
        in_flight = []
        finished = []

        async def download(url):
            in_flight.append(url)
            await asyncio.sleep(0.05 if "slow" in url else 0)
            finished.append(url)
            return Result.ok(files[url])

        result = await merge_audio_segments(["https://cdn.test/slow.wav", "https://cdn.test/fast.wav"], download)

        assert len(in_flight) == 2
        assert finished == ["https://cdn.test/fast.wav", "https://cdn.test/slow.wav"]
        samples, _ = read_wav(result.data.data)
        half = len(samples) // 2
        assert np.allclose(samples[:half, 0], 0.5, atol=1e-3)
        assert np.allclose(samples[half:, 0], -0.25, atol=1e-3)

    @pytest.mark.asyncio
    async def test_all_segments_failing_is_an_error(self):
        result = await merge_audio_segments(
            ["https://cdn.test/a.wav", "https://cdn.test/b.wav", "https://cdn.test/c.wav"],
            downloader({})
        )

        assert not result.success
        assert result.error == "None of the audio segments could be decoded"

    @pytest.mark.asyncio
    async def test_undecodable_segment_is_skipped(self):
        files = {
            "https://cdn.test/a.wav": b"not a wav file",
            "https://cdn.test/b.wav": make_wav(0.1, seconds=0.25),
        }

        result = await merge_audio_segments(list(files), downloader(files))

        assert result.success
        assert result.data.frames == int(0.25 * TEST_SAMPLE_RATE)

    @pytest.mark.asyncio
    async def test_empty_input_is_rejected(self):
        download = downloader({})
        result = await merge_audio_segments([], download)

        assert not result.success
        assert result.kind == ErrorKind.INPUT
        assert download.requested == []

    @pytest.mark.asyncio
    async def test_missing_channels_are_filled_from_channel_zero(self):
        files = {
            "https://cdn.test/mono.wav": make_wav(0.3, seconds=0.1, channels=1),
            "https://cdn.test/stereo.wav": make_wav(-0.2, seconds=0.1, channels=2),
        }

        result = await merge_audio_segments(list(files), downloader(files))

        assert result.data.channels == 2
        samples, _ = read_wav(result.data.data)
        mono_part = samples[:int(0.1 * TEST_SAMPLE_RATE)]
        assert np.allclose(mono_part[:, 0], mono_part[:, 1])
        assert np.allclose(mono_part[:, 1], 0.3, atol=1e-3)

    @pytest.mark.asyncio
    async def test_output_uses_first_segment_sample_rate(self):
        files = {
            "https://cdn.test/a.wav": make_wav(0.1, seconds=0.1, sample_rate=8000),
            "https://cdn.test/b.wav": make_wav(0.1, seconds=0.1, sample_rate=16000),
        }

        result = await merge_audio_segments(list(files), downloader(files))

        assert result.data.sample_rate == 8000
        # Not resampled: the second segment keeps its frame count
        assert result.data.frames == 800 + 1600

    @pytest.mark.asyncio
    async def test_shared_context_stays_open_until_released(self):
        files = {"https://cdn.test/a.wav": make_wav(0.1, seconds=0.1)}

        async with DecodeContext() as context:
            first = await merge_audio_segments(list(files), downloader(files), context=context)
            second = await merge_audio_segments(list(files), downloader(files), context=context)
            assert not context.closed

        assert first.success and second.success
        assert context.closed


@pytest.mark.unit
class TestPcm16Encoding:
    """Float to 16-bit conversion"""

    def test_quantization_is_asymmetric_and_clamped(self):
        samples = np.array([[-1.0], [1.0], [0.5], [-0.5], [2.0], [-2.0], [0.0]])
        quantized = quantize_pcm16(samples)

        assert quantized.dtype == np.int16
        assert quantized[:, 0].tolist() == [-32768, 32767, 16383, -16384, 32767, -32768, 0]

    def test_encoded_file_is_16_bit_wav(self):
        data = encode_wav_pcm16(np.zeros((100, 2), dtype=np.float32), 44100)
        info = sf.info(io.BytesIO(data))

        assert info.format == "WAV"
        assert info.subtype == "PCM_16"
        assert info.channels == 2
        assert info.samplerate == 44100
        assert info.frames == 100

    def test_expand_channels_copies_channel_zero(self):
        mono = np.array([[0.1], [0.2]], dtype=np.float32)
        expanded = expand_channels(mono, 3)

        assert expanded.shape == (2, 3)
        assert np.allclose(expanded[:, 2], [0.1, 0.2])
        assert expand_channels(expanded, 2) is expanded


@pytest.mark.unit
class TestOverlayAndSlice:
    """Timeline overlay of takes and slicing of a backing track"""

    @pytest.mark.asyncio
    async def test_overlay_places_takes_at_start_times(self):
        files = {
            "https://cdn.test/verse.wav": make_wav(0.2, seconds=0.5),
            "https://cdn.test/chorus.wav": make_wav(0.4, seconds=0.5),
        }
        placements = [
            Placement(url="https://cdn.test/verse.wav", start_time=0.0),
            Placement(url="https://cdn.test/chorus.wav", start_time=1.0),
        ]

        result = await overlay_at_offsets(placements, downloader(files), total_duration=2.0)

        assert result.success
        assert result.data.frames == 2 * TEST_SAMPLE_RATE
        samples, _ = read_wav(result.data.data)
        assert np.allclose(samples[:4000, 0], 0.2, atol=1e-3)
        assert np.allclose(samples[4000:8000, 0], 0.0, atol=1e-3)
        assert np.allclose(samples[8000:12000, 0], 0.4, atol=1e-3)

    @pytest.mark.asyncio
    async def test_overlay_offset_shifts_every_take(self):
        files = {"https://cdn.test/verse.wav": make_wav(0.2, seconds=0.5)}
        placements = [Placement(url="https://cdn.test/verse.wav", start_time=1.0)]

        result = await overlay_at_offsets(placements, downloader(files), offset_ms=-500)

        samples, _ = read_wav(result.data.data)
        assert result.data.frames == TEST_SAMPLE_RATE
        assert np.allclose(samples[4000:, 0], 0.2, atol=1e-3)

    @pytest.mark.asyncio
    async def test_overlapping_takes_are_summed_and_clamped(self):
        files = {
            "https://cdn.test/a.wav": make_wav(0.7, seconds=0.1),
            "https://cdn.test/b.wav": make_wav(0.7, seconds=0.1),
        }
        placements = [
            Placement(url="https://cdn.test/a.wav", start_time=0.0),
            Placement(url="https://cdn.test/b.wav", start_time=0.0),
        ]

        result = await overlay_at_offsets(placements, downloader(files))

        samples, _ = read_wav(result.data.data)
        assert np.allclose(samples[:, 0], 32767 / 32768, atol=1e-3)

    @pytest.mark.asyncio
    async def test_overlay_without_placements_is_rejected(self):
        result = await overlay_at_offsets([], downloader({}))

        assert result.kind == ErrorKind.INPUT

    @pytest.mark.asyncio
    async def test_slice_segments_cuts_bounds(self):
        files = {"https://cdn.test/instrumental.wav": make_wav(0.3, seconds=2.0, channels=2)}

        result = await slice_segments(
            "https://cdn.test/instrumental.wav",
            [(0.0, 0.5), (0.5, 2.0), (2.0, 3.0)],
            downloader(files)
        )

        assert result.success
        first, second, beyond = result.data
        assert first.frames == 4000
        assert second.frames == 12000
        assert second.channels == 2
        assert beyond is None

    @pytest.mark.asyncio
    async def test_slice_undecodable_source_is_input_error(self):
        files = {"https://cdn.test/broken.wav": b"garbage"}

        result = await slice_segments("https://cdn.test/broken.wav", [(0.0, 1.0)], downloader(files))

        assert not result.success
        assert result.kind == ErrorKind.INPUT
