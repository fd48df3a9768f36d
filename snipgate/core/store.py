"""
snipgate.core.store — Fragment persistence: contract plus a reference store.

FragmentStore architecture:
  - All mutations guarded by threading.Lock
  - Ids are monotonic, so id order is creation order
  - Revisions kept newest first, capped, snapshotted before title/source edits
  - Diagnostics expire after a TTL and are consumed once
  - Optional JSON persistence: write .tmp → fsync → os.replace → fsync parent dir
  - A change whose write fails is rolled back in memory
  - Corrupt files preserved as .corrupt.<timestamp>
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional, Protocol, runtime_checkable

from snipgate.core.exceptions import FragmentNotFound, InvariantViolation, PersistenceError
from snipgate.utils.config import StoreConfig
from snipgate.utils.enums import Kind
from snipgate.utils.types import ExecutionDiagnostic, Fragment, Revision

logger = logging.getLogger(__name__)

_SNAPSHOT_FIELDS = ("title", "source")


@runtime_checkable
class FragmentRepository(Protocol):
    """What the gateway and editor need from persistence.

    Any backend (SQL, document store, CMS tables) can implement this.
    Exceptions raised here propagate to the caller unchanged.
    """

    def fetch_active_fragments(self) -> list[Fragment]: ...

    def disable_fragment(self, fragment_id: int) -> bool: ...

    def write_diagnostic(self, fragment_id: int, message: str) -> ExecutionDiagnostic: ...

    def append_revision(self, fragment: Fragment) -> Revision: ...

    def get(self, fragment_id: int) -> Optional[Fragment]: ...

    def get_by_slug(self, slug: str) -> Optional[Fragment]: ...

    def create(self, fragment: Fragment) -> Fragment: ...

    def update(self, fragment_id: int, **changes) -> Fragment: ...

    def list(self, include_deleted: bool = False) -> list[Fragment]: ...

    def count(self, include_deleted: bool = False) -> int: ...

    def soft_delete(self, fragment_id: int) -> bool: ...

    def restore(self, fragment_id: int) -> bool: ...

    def delete(self, fragment_id: int) -> bool: ...

    def list_revisions(self, fragment_id: int) -> list[Revision]: ...

    def get_revision(self, revision_id: int) -> Optional[Revision]: ...

    def compare_revisions(self, first_id: int, second_id: int) -> dict: ...

    def consume_diagnostics(self) -> list[ExecutionDiagnostic]: ...


class FragmentStore:
    """In-memory fragment store with optional crash-safe JSON persistence.

    Reads return copies; callers never hold references into the store.
    """

    def __init__(
        self,
        persist_path: str = "",
        max_revisions: int = 10,
        diagnostic_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._path = str(Path(persist_path).resolve()) if persist_path else ""
        self._max_revisions = max_revisions
        self._diagnostic_ttl = diagnostic_ttl_seconds
        self._clock = clock

        self._fragments: dict[int, Fragment] = {}
        self._revisions: dict[int, list[Revision]] = {}  # newest first
        self._diagnostics: dict[int, ExecutionDiagnostic] = {}
        self._next_id = 1
        self._next_revision_id = 1

        self._lock = threading.Lock()

        if self._path:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._load()

    @classmethod
    def from_config(cls, config: StoreConfig, **kwargs) -> "FragmentStore":
        return cls(
            persist_path=config.persist_path,
            max_revisions=config.max_revisions,
            diagnostic_ttl_seconds=config.diagnostic_ttl_seconds,
            **kwargs,
        )

    # ── Gateway contract ──────────────────────────────────────────────────

    def fetch_active_fragments(self) -> list[Fragment]:
        """Active, non-deleted fragments in ascending id order."""
        with self._lock:
            return [
                f.copy()
                for _, f in sorted(self._fragments.items())
                if f.active and not f.deleted
            ]

    def disable_fragment(self, fragment_id: int) -> bool:
        """Deactivate a fragment. True only if this call changed it."""
        with self._lock, self._rollback_locked():
            fragment = self._fragments.get(fragment_id)
            if fragment is None or not fragment.active:
                return False
            fragment.active = False
            fragment.updated_at = self._clock()
            self._persist_locked()
        logger.warning("Fragment #%d deactivated", fragment_id)
        return True

    def write_diagnostic(self, fragment_id: int, message: str) -> ExecutionDiagnostic:
        now = self._clock()
        diagnostic = ExecutionDiagnostic(
            fragment_id=fragment_id,
            error_message=message,
            timestamp=now,
            expires_at=now + self._diagnostic_ttl,
        )
        with self._lock, self._rollback_locked():
            self._diagnostics[fragment_id] = diagnostic
            self._persist_locked()
        return diagnostic

    def consume_diagnostics(self) -> list[ExecutionDiagnostic]:
        """Return unexpired diagnostics oldest first and forget all of them."""
        now = self._clock()
        with self._lock, self._rollback_locked():
            pending = sorted(self._diagnostics.values(), key=lambda d: d.timestamp)
            had_any = bool(self._diagnostics)
            self._diagnostics.clear()
            if had_any:
                self._persist_locked()
        live = [d for d in pending if d.expires_at > now]
        if len(live) < len(pending):
            logger.debug("Dropped %d expired diagnostic(s)", len(pending) - len(live))
        return live

    def append_revision(self, fragment: Fragment) -> Revision:
        with self._lock, self._rollback_locked():
            revision = self._append_revision_locked(fragment)
            self._persist_locked()
        return revision

    # ── CRUD ──────────────────────────────────────────────────────────────

    def get(self, fragment_id: int) -> Optional[Fragment]:
        with self._lock:
            fragment = self._fragments.get(fragment_id)
            return fragment.copy() if fragment else None

    def get_by_slug(self, slug: str) -> Optional[Fragment]:
        with self._lock:
            for fragment in self._fragments.values():
                if fragment.slug == slug:
                    return fragment.copy()
        return None

    def create(self, fragment: Fragment) -> Fragment:
        """Store a new fragment. Its `id` is ignored and assigned here."""
        now = self._clock()
        with self._lock, self._rollback_locked():
            if fragment.slug and self._slug_taken_locked(fragment.slug, 0):
                raise InvariantViolation(f"Slug already in use: {fragment.slug!r}")
            stored = fragment.copy(
                id=self._next_id, created_at=now, updated_at=now
            )
            self._fragments[stored.id] = stored
            self._next_id += 1
            self._persist_locked()
        logger.info("Fragment #%d created (%s)", stored.id, stored.kind.value)
        return stored.copy()

    def update(self, fragment_id: int, **changes) -> Fragment:
        """Apply field changes. A title or source change snapshots the old state first."""
        rejected = (set(changes) - set(Fragment.__dataclass_fields__)) | (
            {"id", "created_at"} & set(changes)
        )
        if rejected:
            raise ValueError(f"Cannot update fields: {sorted(rejected)}")

        with self._lock, self._rollback_locked():
            current = self._fragments.get(fragment_id)
            if current is None:
                raise FragmentNotFound(fragment_id)
            slug = changes.get("slug")
            if slug and self._slug_taken_locked(slug, fragment_id):
                raise InvariantViolation(f"Slug already in use: {slug!r}")

            if any(
                name in changes and changes[name] != getattr(current, name)
                for name in _SNAPSHOT_FIELDS
            ):
                self._append_revision_locked(current)

            updated = current.copy(**{**changes, "updated_at": self._clock()})
            self._fragments[fragment_id] = updated
            self._persist_locked()
        return updated.copy()

    def list(
        self,
        include_deleted: bool = False,
        kind: Optional[Kind] = None,
        active: Optional[bool] = None,
        deleted_only: bool = False,
    ) -> list[Fragment]:
        with self._lock:
            fragments = [f for _, f in sorted(self._fragments.items())]
        if deleted_only:
            fragments = [f for f in fragments if f.deleted]
        elif not include_deleted:
            fragments = [f for f in fragments if not f.deleted]
        if kind is not None:
            fragments = [f for f in fragments if f.kind is kind]
        if active is not None:
            fragments = [f for f in fragments if f.active is active]
        return [f.copy() for f in fragments]

    def count(self, include_deleted: bool = False, **filters) -> int:
        return len(self.list(include_deleted=include_deleted, **filters))

    def soft_delete(self, fragment_id: int) -> bool:
        return self._set_deleted(fragment_id, True)

    def restore(self, fragment_id: int) -> bool:
        return self._set_deleted(fragment_id, False)

    def delete(self, fragment_id: int) -> bool:
        """Hard delete: the row, its revisions and any pending diagnostic."""
        with self._lock, self._rollback_locked():
            if self._fragments.pop(fragment_id, None) is None:
                return False
            self._revisions.pop(fragment_id, None)
            self._diagnostics.pop(fragment_id, None)
            self._persist_locked()
        logger.info("Fragment #%d permanently deleted", fragment_id)
        return True

    # ── Revisions ─────────────────────────────────────────────────────────

    def list_revisions(self, fragment_id: int) -> list[Revision]:
        with self._lock:
            return list(self._revisions.get(fragment_id, []))

    def get_revision(self, revision_id: int) -> Optional[Revision]:
        with self._lock:
            for revisions in self._revisions.values():
                for revision in revisions:
                    if revision.id == revision_id:
                        return revision
        return None

    def compare_revisions(self, first_id: int, second_id: int) -> dict:
        first = self.get_revision(first_id)
        second = self.get_revision(second_id)
        if first is None:
            raise FragmentNotFound(f"revision #{first_id}")
        if second is None:
            raise FragmentNotFound(f"revision #{second_id}")
        return {
            "first": first,
            "second": second,
            "source_changed": first.source != second.source,
            "title_changed": first.title != second.title,
        }

    # ── Internal ──────────────────────────────────────────────────────────

    def _set_deleted(self, fragment_id: int, deleted: bool) -> bool:
        with self._lock, self._rollback_locked():
            fragment = self._fragments.get(fragment_id)
            if fragment is None:
                return False
            fragment.deleted = deleted
            fragment.updated_at = self._clock()
            self._persist_locked()
        logger.info(
            "Fragment #%d %s", fragment_id, "moved to trash" if deleted else "restored"
        )
        return True

    def _slug_taken_locked(self, slug: str, exclude_id: int) -> bool:
        """MUST be called under self._lock."""
        return any(
            f.slug == slug and f.id != exclude_id for f in self._fragments.values()
        )

    def _append_revision_locked(self, fragment: Fragment) -> Revision:
        """Snapshot and prune. MUST be called under self._lock."""
        revision = Revision(
            id=self._next_revision_id,
            fragment_id=fragment.id,
            title=fragment.title,
            source=fragment.source,
            kind=fragment.kind,
            author_id=fragment.author_id,
            created_at=self._clock(),
        )
        self._next_revision_id += 1
        history = self._revisions.setdefault(fragment.id, [])
        history.insert(0, revision)
        if self._max_revisions > 0:
            del history[self._max_revisions :]
        return revision

    # ── Persistence ───────────────────────────────────────────────────────

    def _snapshot_locked(self) -> dict:
        return {
            "next_id": self._next_id,
            "next_revision_id": self._next_revision_id,
            "fragments": [f.to_dict() for _, f in sorted(self._fragments.items())],
            "revisions": [
                r.to_dict() for history in self._revisions.values() for r in history
            ],
            "diagnostics": [d.to_dict() for d in self._diagnostics.values()],
        }

    @contextmanager
    def _rollback_locked(self):
        """MUST be entered under self._lock. A failed change leaves memory matching disk."""
        if not self._path:
            yield
            return
        saved = copy.deepcopy(
            (
                self._fragments,
                self._revisions,
                self._diagnostics,
                self._next_id,
                self._next_revision_id,
            )
        )
        try:
            yield
        except Exception:
            (
                self._fragments,
                self._revisions,
                self._diagnostics,
                self._next_id,
                self._next_revision_id,
            ) = saved
            raise

    def _persist_locked(self):
        """MUST be called under self._lock. No-op for memory-only stores."""
        if not self._path:
            return
        self._atomic_write(self._snapshot_locked())

    def _load(self):
        """Restore state from disk. Corrupt files are moved aside, not fatal."""
        if not os.path.exists(self._path):
            logger.info("FragmentStore: no data at %s, starting fresh", self._path)
            return

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = f.read()
        except OSError as e:
            raise PersistenceError(f"Failed to read {self._path}: {e}") from e

        try:
            parsed = json.loads(raw)
            fragments = [Fragment.from_dict(d) for d in parsed.get("fragments", [])]
            revisions = [Revision.from_dict(d) for d in parsed.get("revisions", [])]
            diagnostics = [
                ExecutionDiagnostic(**d) for d in parsed.get("diagnostics", [])
            ]
            next_id = int(parsed.get("next_id", 1))
            next_revision_id = int(parsed.get("next_revision_id", 1))
        except (json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            self._quarantine(e)
            return

        with self._lock:
            self._fragments = {f.id: f for f in fragments}
            self._revisions = {}
            for revision in sorted(revisions, key=lambda r: r.id, reverse=True):
                self._revisions.setdefault(revision.fragment_id, []).append(revision)
            self._diagnostics = {d.fragment_id: d for d in diagnostics}
            self._next_id = max([next_id] + [f.id + 1 for f in fragments])
            self._next_revision_id = max(
                [next_revision_id] + [r.id + 1 for r in revisions]
            )
        logger.info(
            "FragmentStore: loaded %d fragment(s) from %s", len(fragments), self._path
        )

    def _quarantine(self, error: Exception):
        corrupt_path = f"{self._path}.corrupt.{int(time.time())}"
        try:
            os.rename(self._path, corrupt_path)
            logger.error(
                "FragmentStore: corrupt data moved to %s: %s", corrupt_path, error
            )
        except OSError as rename_err:
            raise PersistenceError(
                f"Corrupt store {self._path} could not be moved aside: {rename_err}"
            ) from error

    def _atomic_write(self, snapshot: dict):
        """Write-tmp → fsync → os.replace → fsync-dir. Crash-safe."""
        tmp_path = self._path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_path, self._path)
            self._fsync_directory(os.path.dirname(self._path))
        except OSError as e:
            logger.error("FragmentStore: atomic write failed: %s", e)
            try:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
            except OSError:
                logger.debug("FragmentStore: could not remove %s", tmp_path)
            raise PersistenceError(f"Failed to write {self._path}: {e}") from e

    @staticmethod
    def _fsync_directory(dir_path: str):
        """fsync a directory to ensure rename/replace is durable."""
        try:
            fd = os.open(dir_path, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError:
            # Not every platform allows opening a directory
            pass
