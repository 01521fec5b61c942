"""
Tests for recording duration recovery.
"""

import struct

import httpx
import pytest

from callbilling.billing.recording import HttpRecordingDurationProbe, parse_wav_duration


def wav_header(seconds: int, sample_rate: int = 8000, channels: int = 1, bits: int = 16, data_size: int | None = None) -> bytes:
    byte_rate = sample_rate * channels * bits // 8
    size = byte_rate * seconds if data_size is None else data_size
    fmt = struct.pack("<HHIIHH", 1, channels, sample_rate, byte_rate, channels * bits // 8, bits)
    return (
        b"RIFF"
        + struct.pack("<I", (36 + size) & 0xFFFFFFFF)
        + b"WAVE"
        + b"fmt "
        + struct.pack("<I", len(fmt))
        + fmt
        + b"data"
        + struct.pack("<I", size)
    )


class TestParseWavDuration:
    def test_reads_duration_from_data_chunk(self) -> None:
        assert parse_wav_duration(wav_header(42)) == 42

    def test_skips_unknown_chunks(self) -> None:
        header = wav_header(7)
        # insert a LIST chunk between fmt and data
        split = header.index(b"data")
        listed = header[:split] + b"LIST" + struct.pack("<I", 4) + b"INFO" + header[split:]
        assert parse_wav_duration(listed) == 7

    def test_streaming_placeholder_uses_total_size(self) -> None:
        header = wav_header(0, data_size=0xFFFFFFFF)
        total = len(header) + 16000 * 30
        assert parse_wav_duration(header, total_size=total) == 30

    def test_not_a_wav(self) -> None:
        assert parse_wav_duration(b"ID3\x03\x00\x00\x00") is None


class TestHttpRecordingDurationProbe:
    @pytest.mark.asyncio
    async def test_prefers_duration_header(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(206, headers={"x-duration-seconds": "12.6"}, content=b"")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            probe = HttpRecordingDurationProbe(client=client)
            assert await probe.probe("https://rec.example/a.wav") == 13

    @pytest.mark.asyncio
    async def test_requests_only_the_header_range(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("range", ""))
            return httpx.Response(
                206,
                headers={"content-range": "bytes 0-43/320044"},
                content=wav_header(20),
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            probe = HttpRecordingDurationProbe(client=client)
            assert await probe.probe("https://rec.example/b.wav") == 20

        assert seen == ["bytes=0-4095"]

    @pytest.mark.asyncio
    async def test_http_error_returns_none(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            probe = HttpRecordingDurationProbe(client=client)
            assert await probe.probe("https://rec.example/missing.wav") is None
