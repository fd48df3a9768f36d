"""
snipgate.core.editor — Write path for fragments: create, update, trash, import.

Every save goes through the same pipeline:
  1. Coerce kind / injection mode / location to enums
  2. Enforce data invariants (InvariantViolation)
  3. Syntax validation (ValidationFailed), skippable by an operator override
  4. Activating server-logic: dry run, and on failure save inactive
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from snipgate.core.exceptions import (
    FragmentNotFound,
    InvariantViolation,
    ValidationFailed,
)
from snipgate.core.store import FragmentRepository
from snipgate.execution.executor import SandboxedExecutor
from snipgate.safety.syntax_validator import SyntaxValidator
from snipgate.utils.enums import InjectionMode, Kind, Stage
from snipgate.utils.types import Fragment, RequestContext

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1

# Kinds that can be rendered through an on-demand marker
MARKER_KINDS = frozenset({Kind.SERVER_LOGIC, Kind.MARKUP})

# Field names accepted from callers and exported files, mapped to Fragment fields
_FIELD_ALIASES = {"code": "source", "type": "kind", "mode": "injection_mode"}
_EDITABLE = (
    "title",
    "slug",
    "kind",
    "source",
    "active",
    "injection_mode",
    "conditions",
    "location",
)


@dataclass
class SaveOutcome:
    fragment: Fragment
    activation_error: str = ""  # dry-run failure; fragment was saved inactive


@dataclass
class ImportReport:
    imported: list[Fragment] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(text).lower()).strip("-")
    return slug or "snippet"


def check_invariants(
    kind: Kind, injection_mode: InjectionMode, location: Optional[Stage]
) -> None:
    """Raise InvariantViolation for combinations the data model forbids."""
    if injection_mode is InjectionMode.ON_DEMAND_MARKER and kind not in MARKER_KINDS:
        raise InvariantViolation(
            f"{kind.value} fragments cannot use {injection_mode.value} injection"
        )
    if location is None:
        return
    if kind is Kind.SERVER_LOGIC and location is not Stage.EARLY_REQUEST:
        raise InvariantViolation(
            f"server-logic fragments only run at {Stage.EARLY_REQUEST.value}"
        )
    if kind is not Kind.SERVER_LOGIC and location is Stage.EARLY_REQUEST:
        raise InvariantViolation(
            f"{kind.value} fragments cannot run at {Stage.EARLY_REQUEST.value}"
        )


def _normalize(data: dict) -> dict:
    """Apply field aliases and keep only editable fields."""
    normalized = {}
    for key, value in data.items():
        key = _FIELD_ALIASES.get(key, key)
        if key in _EDITABLE:
            normalized[key] = value
    return normalized


def _coerce_fields(fields: dict) -> dict:
    for name in ("title", "source"):
        if name in fields and not isinstance(fields[name], str):
            raise InvariantViolation(
                f"{name.capitalize()} must be text, not {type(fields[name]).__name__}"
            )
    try:
        if "kind" in fields:
            fields["kind"] = Kind.coerce(fields["kind"])
        if "injection_mode" in fields:
            fields["injection_mode"] = InjectionMode.coerce(
                fields["injection_mode"] or InjectionMode.AUTO_INJECT
            )
        if "location" in fields:
            fields["location"] = (
                Stage.coerce(fields["location"]) if fields["location"] else None
            )
    except ValueError as e:
        raise InvariantViolation(str(e)) from e
    if "active" in fields:
        fields["active"] = bool(fields["active"])
    if "title" in fields:
        fields["title"] = fields["title"].strip()
    return fields


class SnippetEditor:
    """Administrative operations on fragments.

    The gateway only reads; everything that changes a fragment on purpose
    goes through here.
    """

    def __init__(
        self,
        store: FragmentRepository,
        executor: SandboxedExecutor,
        validator: Optional[SyntaxValidator] = None,
    ):
        self.store = store
        self.executor = executor
        self.validator = validator or executor.validator

    # ── Create / Update ───────────────────────────────────────────────────

    def create(
        self, data: dict, skip_validation: bool = False, author_id: int = 0
    ) -> SaveOutcome:
        return self._create(data, skip_validation, author_id, dry_run=True)

    def update(
        self, fragment_id: int, data: dict, skip_validation: bool = False
    ) -> SaveOutcome:
        current = self._require(fragment_id)
        changes = _coerce_fields(_normalize(data))

        if "title" in changes and not changes["title"]:
            raise InvariantViolation("Title is required")
        if "source" in changes and not str(changes["source"]).strip():
            raise InvariantViolation("Source is required")

        candidate = current.copy(**changes)
        check_invariants(candidate.kind, candidate.injection_mode, candidate.location)

        if "source" in changes or "kind" in changes:
            self._validate(candidate, skip_validation)

        if "slug" in changes:
            changes["slug"] = self._unique_slug(
                changes["slug"] or candidate.title, exclude_id=fragment_id
            )

        activation_error = ""
        needs_dry_run = (
            candidate.active
            and candidate.kind is Kind.SERVER_LOGIC
            and (not current.active or candidate.source != current.source)
        )
        if needs_dry_run:
            activation_error = self._dry_run(candidate)
            if activation_error:
                changes["active"] = False

        fragment = self.store.update(fragment_id, **changes)
        logger.info("Fragment #%d updated", fragment_id)
        return SaveOutcome(fragment, activation_error)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def trash(self, fragment_id: int) -> None:
        if not self.store.soft_delete(fragment_id):
            raise FragmentNotFound(fragment_id)

    def restore(self, fragment_id: int) -> None:
        if not self.store.restore(fragment_id):
            raise FragmentNotFound(fragment_id)

    def delete(self, fragment_id: int) -> None:
        if not self.store.delete(fragment_id):
            raise FragmentNotFound(fragment_id)

    def restore_revision(self, revision_id: int) -> Fragment:
        """Put a revision's title and source back. The current state is snapshotted first."""
        revision = self.store.get_revision(revision_id)
        if revision is None:
            raise FragmentNotFound(f"revision #{revision_id}")
        self._require(revision.fragment_id)
        fragment = self.store.update(
            revision.fragment_id, title=revision.title, source=revision.source
        )
        logger.info(
            "Fragment #%d restored from revision #%d", fragment.id, revision_id
        )
        return fragment

    # ── Import / Export ───────────────────────────────────────────────────

    def import_fragments(
        self,
        records: Union[Iterable[dict], dict],
        skip_validation: bool = False,
        deactivate_on_import: bool = False,
        skip_duplicates: bool = False,
        author_id: int = 0,
    ) -> ImportReport:
        """Create fragments from exported records. Bad records are reported, not raised.

        Accepts a list of records, an export document ({"snippets": [...]}) or a
        single-fragment export ({"snippet": {...}}). Imported code is never run.
        """
        report = ImportReport()
        if isinstance(records, dict):
            if isinstance(records.get("snippets"), list):
                records = records["snippets"]
            elif isinstance(records.get("snippet"), dict):
                records = [records["snippet"]]
            else:
                report.errors.append("Unrecognised import document")
                return report

        for index, record in enumerate(records, start=1):
            if not isinstance(record, dict):
                report.errors.append(f"Record #{index} is not an object")
                continue

            data = _normalize(record)
            label = data.get("title") or f"#{index}"
            if not data.get("title") or not data.get("source") or not data.get("kind"):
                report.errors.append(f"Record #{index} is missing required fields")
                continue

            if skip_duplicates and data.get("slug") and self.store.get_by_slug(data["slug"]):
                report.skipped.append(f'"{label}" already exists')
                continue

            if deactivate_on_import:
                data["active"] = False

            try:
                outcome = self._create(data, skip_validation, author_id, dry_run=False)
            except ValidationFailed as e:
                report.errors.append(f'"{label}" has syntax errors: {e}')
                continue
            except InvariantViolation as e:
                report.errors.append(f'"{label}" rejected: {e}')
                continue
            report.imported.append(outcome.fragment)

        logger.info(
            "Import finished: %d imported, %d skipped, %d error(s)",
            len(report.imported),
            len(report.skipped),
            len(report.errors),
        )
        return report

    def export_fragments(self, fragment_ids: Optional[Iterable[int]] = None) -> dict:
        """Export document readable by import_fragments."""
        if fragment_ids is None:
            fragments = self.store.list()
        else:
            fragments = [self._require(fid) for fid in fragment_ids]
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": time.time(),
            "snippets": [
                {
                    key: value
                    for key, value in f.to_dict().items()
                    if key not in ("id", "deleted", "author_id", "created_at", "updated_at")
                }
                for f in fragments
            ],
        }

    # ── Internal ──────────────────────────────────────────────────────────

    def _create(
        self, data: dict, skip_validation: bool, author_id: int, dry_run: bool
    ) -> SaveOutcome:
        fields = _normalize(data)
        if not str(fields.get("title") or "").strip():
            raise InvariantViolation("Title is required")
        if not str(fields.get("source") or "").strip():
            raise InvariantViolation("Source is required")
        if not fields.get("kind"):
            raise InvariantViolation("Kind is required")
        fields = _coerce_fields(fields)

        candidate = Fragment(id=0, author_id=author_id, **fields)
        check_invariants(candidate.kind, candidate.injection_mode, candidate.location)
        self._validate(candidate, skip_validation)

        candidate.slug = self._unique_slug(candidate.slug or candidate.title)

        activation_error = ""
        if dry_run and candidate.active and candidate.kind is Kind.SERVER_LOGIC:
            activation_error = self._dry_run(candidate)
            if activation_error:
                candidate.active = False

        fragment = self.store.create(candidate)
        return SaveOutcome(fragment, activation_error)

    def _require(self, fragment_id: int) -> Fragment:
        fragment = self.store.get(fragment_id)
        if fragment is None:
            raise FragmentNotFound(fragment_id)
        return fragment

    def _validate(self, fragment: Fragment, skip: bool) -> None:
        result = self.validator.validate(fragment.source, fragment.kind, skip=skip)
        if not result.valid:
            raise ValidationFailed(result)

    def _unique_slug(self, base: Any, exclude_id: int = 0) -> str:
        base = slugify(base)
        slug, counter = base, 1
        while True:
            existing = self.store.get_by_slug(slug)
            if existing is None or existing.id == exclude_id:
                return slug
            slug = f"{base}-{counter}"
            counter += 1

    def _dry_run(self, fragment: Fragment) -> str:
        """Execute once before activation. Returns the error, or "" on success."""
        result = self.executor.execute(fragment, RequestContext())
        if result.success:
            return ""
        logger.warning(
            "Activation refused for %r: %s", fragment.title or fragment.id, result.error
        )
        return result.error
