"""
snipgate.utils.types — Core dataclasses used across all modules.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional, Union

from snipgate.utils.enums import (
    DeviceType,
    ErrorKind,
    ExecutionState,
    InjectionMode,
    Kind,
    PageType,
    Stage,
)


def _uid() -> str:
    return str(uuid.uuid4())


def _now() -> float:
    return time.time()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Fragments ────────────────────────────────────────────────────────────────


@dataclass
class Fragment:
    """A stored snippet.

    `conditions` is kept exactly as stored: a dict, a JSON string, or None.
    The condition evaluator owns parsing so that malformed payloads can fail open.
    """

    id: int
    kind: Kind
    source: str
    title: str = ""
    slug: str = ""
    active: bool = False
    deleted: bool = False
    injection_mode: InjectionMode = InjectionMode.AUTO_INJECT
    conditions: Union[dict, str, None] = None
    location: Optional[Stage] = None  # None = the kind's default stage
    author_id: int = 0
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def copy(self, **changes) -> "Fragment":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source": self.source,
            "title": self.title,
            "slug": self.slug,
            "active": self.active,
            "deleted": self.deleted,
            "injection_mode": self.injection_mode.value,
            "conditions": self.conditions,
            "location": self.location.value if self.location else None,
            "author_id": self.author_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Fragment":
        location = data.get("location")
        return cls(
            id=int(data["id"]),
            kind=Kind.coerce(data["kind"]),
            source=data.get("source", ""),
            title=data.get("title", ""),
            slug=data.get("slug", ""),
            active=bool(data.get("active", False)),
            deleted=bool(data.get("deleted", False)),
            injection_mode=InjectionMode.coerce(
                data.get("injection_mode", InjectionMode.AUTO_INJECT)
            ),
            conditions=data.get("conditions"),
            location=Stage.coerce(location) if location else None,
            author_id=int(data.get("author_id", 0)),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass(frozen=True)
class Revision:
    """Snapshot of a fragment taken before its title or source changed."""

    id: int
    fragment_id: int
    title: str
    source: str
    kind: Kind
    author_id: int = 0
    created_at: float = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fragment_id": self.fragment_id,
            "title": self.title,
            "source": self.source,
            "kind": self.kind.value,
            "author_id": self.author_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Revision":
        return cls(
            id=int(data["id"]),
            fragment_id=int(data["fragment_id"]),
            title=data.get("title", ""),
            source=data.get("source", ""),
            kind=Kind.coerce(data["kind"]),
            author_id=int(data.get("author_id", 0)),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class ExecutionDiagnostic:
    """Short-lived record of a runtime failure, surfaced once to an operator."""

    fragment_id: int
    error_message: str
    timestamp: float = field(default_factory=_now)
    expires_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "fragment_id": self.fragment_id,
            "error_message": self.error_message,
            "timestamp": self.timestamp,
            "expires_at": self.expires_at,
        }


# ── Validation / Execution Results ───────────────────────────────────────────


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str = ""
    line: int = 0  # 0 = unknown

    def describe(self) -> str:
        if self.valid:
            return ""
        if self.line > 0:
            return f"{self.error} on line {self.line}"
        return self.error


@dataclass
class ExecutionResult:
    success: bool
    output: str = ""
    error: str = ""
    error_kind: Optional[ErrorKind] = None
    state: ExecutionState = ExecutionState.SUCCEEDED
    duration_ms: float = 0.0

    @classmethod
    def failed(cls, error: str, error_kind: ErrorKind) -> "ExecutionResult":
        return cls(
            success=False,
            error=error,
            error_kind=error_kind,
            state=ExecutionState.FAILED,
        )


# ── Request Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RequestContext:
    """What the host knows about the current request.

    Built by the host once per request and handed to the gateway.
    """

    url: str = ""
    page_types: frozenset[PageType] = frozenset()
    content_type: Optional[str] = None
    user_roles: frozenset[str] = frozenset()
    authenticated: bool = False
    device: DeviceType = DeviceType.DESKTOP
    now: datetime = field(default_factory=_utcnow)
    can_manage: bool = False  # privileged viewer: sees inline errors
    request_id: str = field(default_factory=_uid)

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "url": self.url,
            "authenticated": self.authenticated,
            "device": self.device.value,
        }
