"""
Domain model for call events and the adapter that normalizes external payloads.

Call rows reach the billing core from several producers (provider webhooks, sync jobs,
older ingestion code) that disagree on field names and units. Everything is funnelled
through ``normalize_call_event`` before any billing logic runs.
"""

from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from callbilling.shared.exceptions import CallEventNormalizationError

BILLABLE_STATUSES: frozenset[str] = frozenset({"completed", "ended", "finished", "terminated"})

# Epoch values above this are milliseconds (year 33658 in seconds).
_EPOCH_MS_THRESHOLD = 10**12

_CALL_ID_KEYS = ("call_id", "callId", "id")
_USER_ID_KEYS = ("user_id", "userId")
_AGENT_ID_KEYS = ("agent_id", "agentId", "telephony_agent_id", "retell_agent_id")
_STATUS_KEYS = ("call_status", "status", "callStatus")
_TIMESTAMP_KEYS = ("timestamp", "start_time", "started_at", "start_timestamp", "startTimestamp")
_RECORDING_KEYS = ("recording_url", "recordingUrl", "audio_url")


class CallEvent(BaseModel):
    """A terminal (or in-flight) call as seen by the billing core."""

    model_config = ConfigDict(frozen=True)

    call_id: str = Field(..., min_length=1, description="Globally unique, stable call identifier")
    user_id: str = Field(..., min_length=1, description="Owner of the call")
    agent_id: str | None = Field(default=None, description="Telephony-side agent identifier")
    duration_sec: int = Field(default=0, ge=0, description="Call duration in whole seconds")
    call_status: str = Field(default="unknown", description="Lower-cased provider status")
    timestamp: datetime = Field(..., description="Call start time (UTC)")
    recording_url: str | None = Field(default=None, description="Recording location, if any")

    @property
    def is_billable_status(self) -> bool:
        return self.call_status in BILLABLE_STATUSES

    @property
    def has_recoverable_duration(self) -> bool:
        """Duration is known, or may be recovered from the recording."""
        return self.duration_sec > 0 or bool(self.recording_url)


def _get(payload: Any, key: str) -> Any:
    if isinstance(payload, Mapping):
        return payload.get(key)
    return getattr(payload, key, None)


def _pick(payload: Any, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = _get(payload, key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _whole_seconds(value: Decimal) -> int:
    return max(0, int(value.to_integral_value(rounding=ROUND_HALF_UP)))


def _epoch_to_datetime(value: Decimal) -> datetime:
    seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(float(seconds), tz=timezone.utc)
    except (OverflowError, ValueError, OSError) as exc:
        raise CallEventNormalizationError(
            f"Call timestamp out of range: {value}", field="timestamp"
        ) from exc


def normalize_duration(payload: Any) -> int:
    """Extract a duration in whole seconds from any known payload shape.

    Priority: explicit seconds, milliseconds, generic ``duration`` (seconds), then the
    difference of start/end epoch timestamps (milliseconds). Unknown shapes yield 0.
    """
    seconds = _to_decimal(_pick(payload, ("duration_sec", "duration_seconds", "durationSec")))
    if seconds is not None and seconds > 0:
        return _whole_seconds(seconds)

    millis = _to_decimal(_pick(payload, ("duration_ms", "durationMs")))
    if millis is not None and millis > 0:
        return _whole_seconds(millis / 1000)

    generic = _to_decimal(_get(payload, "duration"))
    if generic is not None and generic > 0:
        return _whole_seconds(generic)

    start = _to_decimal(_pick(payload, ("start_timestamp", "startTimestamp")))
    end = _to_decimal(_pick(payload, ("end_timestamp", "endTimestamp")))
    if start is not None and end is not None and end > start:
        return _whole_seconds((end - start) / 1000)

    return 0


def normalize_timestamp(value: Any, default: datetime) -> datetime:
    """Coerce datetimes, ISO strings and epoch seconds/milliseconds into aware UTC."""
    if value is None:
        return default
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    number = _to_decimal(value)
    if number is not None:
        if number <= 0:
            return default
        return _epoch_to_datetime(number)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise CallEventNormalizationError(
                f"Unparseable call timestamp: {value!r}", field="timestamp"
            ) from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise CallEventNormalizationError(f"Unsupported call timestamp: {value!r}", field="timestamp")


def normalize_call_event(
    payload: Mapping[str, Any] | Any,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> CallEvent:
    """Map an arbitrary external call shape (dict or ORM row) onto ``CallEvent``.

    Raises:
        CallEventNormalizationError: when the call or user identifier is missing, or
            the timestamp cannot be read.
    """
    call_id = _pick(payload, _CALL_ID_KEYS)
    if call_id is None:
        raise CallEventNormalizationError("Call payload has no call identifier", field="call_id")
    user_id = _pick(payload, _USER_ID_KEYS)
    if user_id is None:
        raise CallEventNormalizationError(
            f"Call {call_id} has no user identifier", field="user_id"
        )

    status = _pick(payload, _STATUS_KEYS)
    agent_id = _pick(payload, _AGENT_ID_KEYS)
    recording_url = _pick(payload, _RECORDING_KEYS)

    return CallEvent(
        call_id=str(call_id).strip(),
        user_id=str(user_id).strip(),
        agent_id=str(agent_id).strip() if agent_id is not None else None,
        duration_sec=normalize_duration(payload),
        call_status=str(status).strip().lower() if status is not None else "unknown",
        timestamp=normalize_timestamp(_pick(payload, _TIMESTAMP_KEYS), default=clock()),
        recording_url=str(recording_url).strip() if recording_url is not None else None,
    )
