"""Models for sync operations."""

import math
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from .errors import ApplicationError


class SyncStatus(str, Enum):
    """Status shown to the UI for the current/last sync run."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SyncScope(str, Enum):
    """Which records a sync request targets."""
    ALL = "all"
    SINGLE = "single"
    MULTIPLE = "multiple"


class SyncRequest:
    """One sync invocation. An empty target_ids list means "all"."""

    def __init__(
        self,
        scope: SyncScope = SyncScope.ALL,
        target_ids: Optional[Iterable[str]] = None,
        force_update: bool = False,
        template_id: Optional[str] = None,
    ):
        scope = SyncScope(scope)
        ids = [str(t).strip() for t in (target_ids or []) if str(t).strip()]

        if scope == SyncScope.SINGLE and len(ids) != 1:
            raise ValueError("single scope requires exactly one target id")
        if scope == SyncScope.MULTIPLE and not ids:
            raise ValueError("multiple scope requires at least one target id")
        if scope == SyncScope.ALL and ids:
            raise ValueError("all scope does not take target ids")

        self.scope = scope
        self.target_ids = ids
        self.force_update = force_update
        self.template_id = template_id

    @classmethod
    def all(cls, **options) -> "SyncRequest":
        return cls(SyncScope.ALL, **options)

    @classmethod
    def single(cls, target_id: str, **options) -> "SyncRequest":
        return cls(SyncScope.SINGLE, [target_id], **options)

    @classmethod
    def multiple(cls, target_ids: Iterable[str], **options) -> "SyncRequest":
        return cls(SyncScope.MULTIPLE, list(target_ids), **options)

    def to_payload(self) -> dict:
        """JSON body sent to the sync endpoint."""
        payload = {"targetIds": ",".join(self.target_ids)}
        if self.force_update:
            payload["forceUpdate"] = True
        if self.template_id:
            payload["templateId"] = self.template_id
        return payload

    def __repr__(self):
        return f"SyncRequest(scope={self.scope.value!r}, target_ids={self.target_ids!r})"


def _first_int(data: dict, *keys) -> int:
    for key in keys:
        value = data.get(key)
        if value:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return 0


class SyncResult:
    """Result of a sync operation as reported by the backend."""
    def __init__(self, success: bool, imported_or_updated: int = 0, errors: int = 0, message: str = ""):
        self.success = success
        self.imported_or_updated = imported_or_updated
        self.errors = errors
        self.message = message

    @classmethod
    def from_payload(cls, data: dict) -> "SyncResult":
        """
        Build a result from a backend response.

        Accepts {success, stats: {imported, updated, errors}, message} as well as
        the import endpoint's {success, stats: {total, importados, erros}, mensagem}.
        Stats missing from the payload fall back to the top-level keys. Only an
        explicit success=false marks the result as failed.

        Raises:
            ApplicationError: stats present but not an object
        """
        stats = data.get("stats") or data
        if not isinstance(stats, dict):
            raise ApplicationError("Malformed stats in response")
        imported = _first_int(stats, "imported", "importados", "total")
        updated = _first_int(stats, "updated")
        errors = _first_int(stats, "errors", "erros")
        message = data.get("message") or data.get("mensagem") or data.get("error") or ""
        return cls(
            success=data.get("success", True) is not False,
            imported_or_updated=imported + updated,
            errors=errors,
            message=str(message),
        )

    def to_dict(self):
        return {
            "success": self.success,
            "importedOrUpdated": self.imported_or_updated,
            "errors": self.errors,
            "message": self.message,
        }


class SyncState:
    """Aggregate sync status. Owned by the orchestrator; readers get copies."""
    def __init__(self):
        self.is_running = False
        self.last_run_at: Optional[datetime] = None
        self.last_status = SyncStatus.IDLE
        self.imported_count = 0
        self.error_count = 0
        self.last_message: Optional[str] = None

    def copy(self) -> "SyncState":
        clone = SyncState()
        clone.__dict__.update(self.__dict__)
        return clone

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = {
            "isRunning": self.is_running,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastStatus": self.last_status.value,
            "importedCount": self.imported_count,
            "errorCount": self.error_count,
            "lastMessage": self.last_message,
        }
        if now is not None:
            data["lastRunAgo"] = format_time_since(self.last_run_at, now)
        return data

    def __repr__(self):
        return (
            f"SyncState(status={self.last_status.value}, running={self.is_running}, "
            f"imported={self.imported_count}, errors={self.error_count})"
        )


_TIME_UNITS: List[tuple] = [(86400, "d"), (3600, "h"), (60, "m")]


def format_time_since(then: Optional[datetime], now: datetime) -> str:
    """Render the "time since last sync" label used by the handover screens."""
    if then is None:
        return "Nunca"
    seconds = max(0, math.floor((now - then).total_seconds()))
    for size, suffix in _TIME_UNITS:
        if seconds >= size:
            return f"há {seconds // size}{suffix}"
    return f"há {seconds}s"
