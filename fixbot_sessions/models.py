from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping

from .states import SessionState, TransitionOrigin


def encode_payload(payload: Mapping[str, Any] | None) -> str | None:
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise ValueError(f"Session payload must be a mapping or None, got {type(payload).__name__}")
    try:
        return json.dumps(dict(payload), ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Session payload is not JSON serializable: {exc}") from exc


def decode_payload(raw: object) -> Dict[str, Any] | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, Mapping):
        return dict(raw)
    value = json.loads(str(raw))
    return value if isinstance(value, dict) else {"value": value}


def _as_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _as_optional_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    return int(value)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class Session:
    owner_id: str
    state: SessionState
    payload: Dict[str, Any] | None
    equipment_ref: int | None
    version: int
    last_activity: datetime
    message_count: int
    created_at: datetime
    warning_sent: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Session":
        return cls(
            owner_id=str(row["owner_id"]),
            state=SessionState(str(row["state"])),
            payload=decode_payload(row.get("payload")),
            equipment_ref=_as_optional_int(row.get("equipment_ref")),
            version=int(row["version"]),
            last_activity=_as_datetime(row["last_activity"]),
            message_count=int(row.get("message_count") or 0),
            created_at=_as_datetime(row["created_at"]),
            warning_sent=bool(row.get("warning_sent") or False),
        )

    def to_cache(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "state": self.state.value,
            "payload": self.payload,
            "equipment_ref": self.equipment_ref,
            "version": self.version,
            "last_activity": self.last_activity.isoformat(),
            "message_count": self.message_count,
            "created_at": self.created_at.isoformat(),
            "warning_sent": self.warning_sent,
        }

    @classmethod
    def from_cache(cls, data: Mapping[str, Any]) -> "Session":
        return cls.from_row(data)


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    history_id: int
    owner_id: str
    previous_state: SessionState | None
    new_state: SessionState
    origin: TransitionOrigin
    reason: str
    version: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TransitionRecord":
        previous = row.get("previous_state")
        return cls(
            history_id=int(row["history_id"]),
            owner_id=str(row["owner_id"]),
            previous_state=SessionState(str(previous)) if previous else None,
            new_state=SessionState(str(row["new_state"])),
            origin=TransitionOrigin(str(row["origin"])),
            reason=str(row.get("reason") or ""),
            version=int(row["version"]),
            created_at=_as_datetime(row["created_at"]),
        )


@dataclass(frozen=True, slots=True)
class IdleSession:
    """A reaper candidate: enough to attempt a version-checked close."""

    owner_id: str
    state: SessionState
    version: int
    last_activity: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IdleSession":
        return cls(
            owner_id=str(row["owner_id"]),
            state=SessionState(str(row["state"])),
            version=int(row["version"]),
            last_activity=_as_datetime(row["last_activity"]),
        )


@dataclass(frozen=True, slots=True)
class DeliveryRegistration:
    is_duplicate: bool
    retry_count: int
    first_seen: datetime
    degraded: bool = False
