"""
Recovery of a call duration from its recording when the provider reported none.
"""

import struct
from typing import Protocol

import httpx

from callbilling.shared.logging import get_logger

logger = get_logger(__name__)

# Headers some storage backends use to expose media duration in seconds.
_DURATION_HEADERS = ("x-duration-seconds", "x-amz-meta-duration", "content-duration")

# Enough to reach the "data" chunk of any ordinary WAV header.
_HEADER_BYTES = 4096


class RecordingDurationProbe(Protocol):
    """Protocol for recording duration probes."""

    async def probe(self, recording_url: str) -> int | None:
        """Return the recording duration in whole seconds, or None if unknown."""
        ...


def parse_wav_duration(header: bytes, total_size: int | None = None) -> int | None:
    """Compute a WAV duration from the leading bytes of the file.

    Args:
        header: First bytes of the file (must include the ``fmt `` chunk).
        total_size: Full file size, used when the ``data`` chunk size is a
            streaming placeholder (0 or 0xFFFFFFFF).

    Returns:
        Duration in whole seconds, or None if the bytes are not a usable WAV header.
    """
    if len(header) < 12 or header[0:4] != b"RIFF" or header[8:12] != b"WAVE":
        return None

    byte_rate: int | None = None
    offset = 12
    while offset + 8 <= len(header):
        chunk_id = header[offset:offset + 4]
        (chunk_size,) = struct.unpack("<I", header[offset + 4:offset + 8])
        body = offset + 8
        if chunk_id == b"fmt ":
            if body + 12 > len(header):
                return None
            (byte_rate,) = struct.unpack("<I", header[body + 8:body + 12])
        elif chunk_id == b"data":
            if not byte_rate:
                return None
            data_size = chunk_size
            if data_size in (0, 0xFFFFFFFF) and total_size:
                data_size = max(0, total_size - body)
            return round(data_size / byte_rate)
        offset = body + chunk_size + (chunk_size % 2)
    return None


def _total_size(response: httpx.Response) -> int | None:
    content_range = response.headers.get("content-range", "")
    if "/" in content_range:
        total = content_range.rsplit("/", 1)[1].strip()
        if total.isdigit():
            return int(total)
    length = response.headers.get("content-length", "")
    if response.status_code == 200 and length.isdigit():
        return int(length)
    return None


class HttpRecordingDurationProbe:
    """Probe a recording over HTTP: duration headers first, then the WAV header."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._client = client
        self._timeout = httpx.Timeout(timeout_seconds)

    async def probe(self, recording_url: str) -> int | None:
        if self._client is not None:
            return await self._probe_with(self._client, recording_url)
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            return await self._probe_with(client, recording_url)

    async def _probe_with(self, client: httpx.AsyncClient, recording_url: str) -> int | None:
        try:
            response = await client.get(
                recording_url,
                headers={"Range": f"bytes=0-{_HEADER_BYTES - 1}"},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Recording probe request failed",
                extra={"recording_url": recording_url, "error": str(exc)},
            )
            return None

        for name in _DURATION_HEADERS:
            value = response.headers.get(name)
            if value:
                try:
                    return max(0, round(float(value)))
                except ValueError:
                    continue

        try:
            return parse_wav_duration(response.content[:_HEADER_BYTES], _total_size(response))
        except struct.error:
            logger.warning("Recording header is truncated", extra={"recording_url": recording_url})
            return None
