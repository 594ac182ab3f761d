"""Alert batch data model and Alertmanager webhook payload parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


class PayloadError(Exception):
    """Raised when an alert batch payload cannot be parsed."""


# Alertmanager encodes "no end time" as the zero time.
_ZERO_TIME_PREFIX = "0001-01-01"


def parse_time(value: str | None) -> datetime | None:
    """Parse an RFC3339 timestamp ('2026-02-10T12:34:56Z', with optional fraction/offset).

    Empty values and the zero time return None; non-strings raise ValueError.
    """
    if not isinstance(value, str) and value is not None:
        raise ValueError(f"expected an RFC3339 string, got {type(value).__name__}")
    if not value or value.startswith(_ZERO_TIME_PREFIX):
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # fromisoformat only accepts up to microsecond precision
    if "." in value:
        head, _, rest = value.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        value = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Alert:
    """A single alert: labels, annotations, active window, and provenance link."""

    labels: dict[str, str]
    annotations: dict[str, str] = field(default_factory=dict)
    starts_at: datetime | None = None
    ends_at: datetime | None = None  # None means still firing
    generator_url: str = ""
    status: str = ""
    fingerprint: str = ""

    def __post_init__(self):
        if not self.status:
            self.status = "firing" if self.ends_at is None else "resolved"

    @property
    def firing(self) -> bool:
        return self.status == "firing"


@dataclass
class AlertBatch:
    """One group of alerts delivered to a receiver as a single message."""

    receiver: str
    alerts: list[Alert] = field(default_factory=list)
    group_labels: dict[str, str] = field(default_factory=dict)
    common_labels: dict[str, str] = field(default_factory=dict)
    common_annotations: dict[str, str] = field(default_factory=dict)
    external_url: str = ""
    status: str = ""

    def firing(self) -> list[Alert]:
        return [a for a in self.alerts if a.firing]

    def resolved(self) -> list[Alert]:
        return [a for a in self.alerts if not a.firing]


def _str(raw: dict, key: str) -> str:
    value = raw.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PayloadError(f"Error: '{key}' must be a string")
    return value


def _str_map(value, what: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PayloadError(f"Error: '{what}' must be a mapping of strings")
    return {str(k): str(v) for k, v in value.items()}


def parse_alert(raw: dict) -> Alert:
    if not isinstance(raw, dict):
        raise PayloadError("Error: each alert must be a JSON object")
    try:
        starts_at = parse_time(raw.get("startsAt"))
        ends_at = parse_time(raw.get("endsAt"))
    except ValueError as exc:
        raise PayloadError(f"Error: invalid alert timestamp: {exc}") from exc
    return Alert(
        labels=_str_map(raw.get("labels"), "labels"),
        annotations=_str_map(raw.get("annotations"), "annotations"),
        starts_at=starts_at,
        ends_at=ends_at,
        generator_url=_str(raw, "generatorURL"),
        status=_str(raw, "status"),
        fingerprint=_str(raw, "fingerprint"),
    )


def parse_batch(raw: dict) -> AlertBatch:
    """Build an AlertBatch from one Alertmanager webhook payload."""
    if not isinstance(raw, dict):
        raise PayloadError("Error: alert batch must be a JSON object")
    alerts = raw.get("alerts") or []
    if not isinstance(alerts, list):
        raise PayloadError("Error: 'alerts' must be a list")
    return AlertBatch(
        receiver=_str(raw, "receiver"),
        alerts=[parse_alert(a) for a in alerts],
        group_labels=_str_map(raw.get("groupLabels"), "groupLabels"),
        common_labels=_str_map(raw.get("commonLabels"), "commonLabels"),
        common_annotations=_str_map(raw.get("commonAnnotations"), "commonAnnotations"),
        external_url=_str(raw, "externalURL"),
        status=_str(raw, "status"),
    )


def parse_batches(payload) -> list[AlertBatch]:
    """Accept a single webhook payload or a list of them."""
    if isinstance(payload, list):
        return [parse_batch(item) for item in payload]
    return [parse_batch(payload)]
