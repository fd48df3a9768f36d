"""
snipgate.safety.guardrails — Deterministic deny-list for server-logic fragments.

Checked BEFORE the sandboxed executor runs any server-logic source. Matching is
a word-boundary, case-insensitive search for `name(`. This is a best-effort
static filter, not a security boundary.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from snipgate.utils.config import SandboxConfig

logger = logging.getLogger(__name__)

DISALLOWED_MESSAGE = "contains disallowed operations"


class GuardrailViolation(Exception):
    """Raised when the deny-list blocks a fragment."""

    def __init__(self, rule: str, detail: str = ""):
        self.rule = rule
        self.detail = detail
        super().__init__(f"Guardrail violation [{rule}]: {detail}")


class GuardrailEngine:
    """Pre-execution deny-list checker.

    Returns None if OK, raises GuardrailViolation if blocked.
    """

    def __init__(self, config: Optional[SandboxConfig] = None):
        self._config = config or SandboxConfig()

        names = [
            n.strip()
            for n in list(self._config.denied_functions)
            + list(self._config.extra_denied_functions)
            if n and n.strip()
        ]
        # Longest first so `execve` is reported rather than `exec`
        names = sorted(set(names), key=len, reverse=True)
        self._denied = names
        self._pattern = (
            re.compile(
                r"\b(" + "|".join(re.escape(n) for n in names) + r")\s*\(",
                re.IGNORECASE,
            )
            if names
            else None
        )

        self._total_violations = 0

    # ── Public API ────────────────────────────────────────────────────────

    @property
    def bypassed(self) -> bool:
        return self._config.allow_dangerous_operations

    @property
    def denied_functions(self) -> list[str]:
        return list(self._denied)

    @property
    def total_violations(self) -> int:
        return self._total_violations

    def check(self, source: str, fragment_id: int = 0) -> None:
        """Scan server-logic source. Raises GuardrailViolation on a match."""
        if self._config.allow_dangerous_operations:
            logger.warning(
                "Deny-list bypassed by operator capability for fragment #%d",
                fragment_id,
            )
            return

        match = self.find(source)
        if match:
            self._total_violations += 1
            logger.warning(
                "Blocked disallowed call '%s(' in fragment #%d",
                match,
                fragment_id,
            )
            raise GuardrailViolation("DISALLOWED_CALL", DISALLOWED_MESSAGE)

    def find(self, source: str) -> Optional[str]:
        """Return the first denied name called in `source`, or None."""
        if not self._pattern or not source:
            return None
        m = self._pattern.search(source)
        return m.group(1) if m else None
