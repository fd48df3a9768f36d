"""
snipgate.core.gateway — Request-lifecycle entry point for fragment execution.

Two paths:
  - Auto-inject: run_stage() runs every qualifying fragment bound to a stage,
    in ascending id order, at most once per (stage, fragment) per request.
  - On-demand marker: render_marker() / expand_markers() render one fragment
    where the host content asks for it.

Circuit breaker (auto-inject, server-logic only): a SYNTAX or RUNTIME failure
deactivates the fragment and leaves a one-shot diagnostic for an operator.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from snipgate.core.conditions import ConditionEvaluator
from snipgate.core.context import bind_context, request_context, unbind_context
from snipgate.core.exceptions import FragmentNotFound
from snipgate.core.store import FragmentRepository
from snipgate.execution.executor import SandboxedExecutor
from snipgate.utils.config import GatewayConfig
from snipgate.utils.enums import ErrorKind, InjectionMode, Kind, Stage
from snipgate.utils.types import (
    ExecutionDiagnostic,
    ExecutionResult,
    Fragment,
    RequestContext,
)

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Snippet not found or inactive."
MARKER_REFUSED_MESSAGE = (
    "Stylesheet and script snippets cannot be rendered through a marker. "
    "Use auto-inject mode instead."
)

# Where a fragment runs when it declares no location
_DEFAULT_STAGE: dict[Kind, Stage] = {
    Kind.SERVER_LOGIC: Stage.EARLY_REQUEST,
    Kind.SCRIPT: Stage.SCRIPT_ENQUEUE,
    Kind.STYLESHEET: Stage.STYLE_ENQUEUE,
    Kind.MARKUP: Stage.BODY,
}
_missing = set(Kind) - set(_DEFAULT_STAGE)
if _missing:
    raise RuntimeError(f"No default stage for {_missing}")

_BREAKER_ERRORS = frozenset({ErrorKind.SYNTAX, ErrorKind.RUNTIME})
_WRAPPER_NAME = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*$")
_MARKER_ATTR = re.compile(r"""([a-zA-Z_-]+)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"']+))""")


def effective_stage(fragment: Fragment) -> Stage:
    if fragment.kind is Kind.SERVER_LOGIC:
        return Stage.EARLY_REQUEST
    return fragment.location or _DEFAULT_STAGE[fragment.kind]


# ── Request Scope ────────────────────────────────────────────────────────────


class RequestScope:
    """Lifetime of one host request: its context and the idempotency latch.

    Usable as a context manager; the context stays bound until close().
    """

    def __init__(self, context: RequestContext):
        self.context = context
        self._latch: set[tuple[Stage, int]] = set()
        self._token = bind_context(context)

    def claim(self, stage: Stage, fragment_id: int) -> bool:
        """Mark (stage, fragment) as run. False if it already was."""
        key = (stage, fragment_id)
        if key in self._latch:
            return False
        self._latch.add(key)
        return True

    def close(self):
        if self._token is not None:
            unbind_context(self._token)
            self._token = None

    def __enter__(self) -> "RequestScope":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@dataclass
class StageResult:
    stage: Stage
    output: str = ""
    executed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    disabled: list[int] = field(default_factory=list)  # tripped the breaker


# ── Gateway ──────────────────────────────────────────────────────────────────


class ExecutionGateway:
    """Decides which fragments run at each stage and merges their output.

    Fragment failures never escape as exceptions; persistence errors do.
    """

    def __init__(
        self,
        store: FragmentRepository,
        executor: SandboxedExecutor,
        evaluator: Optional[ConditionEvaluator] = None,
        config: Optional[GatewayConfig] = None,
    ):
        self.store = store
        self.executor = executor
        self.evaluator = evaluator or ConditionEvaluator()
        self.config = config or GatewayConfig()

        marker = re.escape(self.config.marker_tag)
        self._marker_pattern = re.compile(r"\[" + marker + r"\b([^\]]*)\]", re.IGNORECASE)

    # ── Request lifecycle ─────────────────────────────────────────────────

    def begin_request(self, context: RequestContext) -> RequestScope:
        logger.debug("Request started: %s", context.to_log_dict())
        return RequestScope(context)

    def end_request(self, scope: RequestScope):
        scope.close()

    # ── Auto-inject path ──────────────────────────────────────────────────

    def run_stage(self, scope: RequestScope, stage: Union[Stage, str]) -> StageResult:
        stage = Stage.coerce(stage)
        result = StageResult(stage=stage)
        parts: list[str] = []

        with request_context(scope.context):
            for fragment in self.store.fetch_active_fragments():
                if fragment.deleted or not fragment.active:
                    continue
                if fragment.injection_mode is InjectionMode.ON_DEMAND_MARKER:
                    continue
                if effective_stage(fragment) is not stage:
                    continue
                if not scope.claim(stage, fragment.id):
                    continue
                if not (fragment.source or "").strip():
                    continue
                if not self.evaluator.should_run(fragment):
                    continue

                outcome = self.executor.execute(fragment, scope.context)
                if outcome.success:
                    result.executed.append(fragment.id)
                    rendered = self._wrap_output(fragment, outcome.output)
                    if rendered:
                        parts.append(rendered)
                    continue

                result.failed.append(fragment.id)
                if self._handle_failure(fragment, outcome):
                    result.disabled.append(fragment.id)
                if scope.context.can_manage:
                    parts.append(
                        self._error_html(f"Snippet #{fragment.id}: {outcome.error}")
                    )

        result.output = "\n".join(parts)
        return result

    def _handle_failure(self, fragment: Fragment, outcome: ExecutionResult) -> bool:
        """Log a failure and trip the breaker when it applies. True if tripped."""
        if fragment.kind is Kind.SERVER_LOGIC and outcome.error_kind in _BREAKER_ERRORS:
            if self.store.disable_fragment(fragment.id):
                self.store.write_diagnostic(fragment.id, outcome.error)
                logger.warning(
                    "Fragment #%d disabled after %s error: %s",
                    fragment.id,
                    outcome.error_kind.value,
                    outcome.error,
                )
                return True
            logger.warning(
                "Fragment #%d failed but was not disabled: %s",
                fragment.id,
                outcome.error,
            )
            return False

        if outcome.error_kind is ErrorKind.SECURITY:
            logger.warning(
                "Fragment #%d refused by deny-list, left active: %s",
                fragment.id,
                outcome.error,
            )
        else:
            logger.warning("Fragment #%d failed: %s", fragment.id, outcome.error)
        return False

    def _wrap_output(self, fragment: Fragment, output: str) -> str:
        if not output:
            return ""
        if fragment.kind is Kind.SCRIPT and self.config.wrap_script_output:
            return f"<script>\n{output}\n</script>"
        if fragment.kind is Kind.STYLESHEET and self.config.wrap_stylesheet_output:
            return f"<style>\n{output}\n</style>"
        return output

    # ── On-demand marker path ─────────────────────────────────────────────

    def render_marker(
        self,
        scope: RequestScope,
        ref: Union[int, str],
        *,
        wrapper: str = "div",
        css_class: str = "",
    ) -> str:
        """Render one fragment by id or slug. Failures never disable it."""
        fragment = self._lookup(ref)
        if fragment is None or fragment.deleted or not fragment.active:
            return self._inline_error(scope, NOT_FOUND_MESSAGE)

        if fragment.kind in (Kind.SCRIPT, Kind.STYLESHEET):
            return self._inline_error(scope, MARKER_REFUSED_MESSAGE)

        with request_context(scope.context):
            if not self.evaluator.should_run(fragment):
                return ""

        outcome = self.executor.execute(fragment, scope.context)
        if not outcome.success:
            logger.warning(
                "Marker render of fragment #%d failed: %s", fragment.id, outcome.error
            )
            return self._inline_error(scope, outcome.error)

        if wrapper == "none":
            return outcome.output
        if not _WRAPPER_NAME.match(wrapper or ""):
            wrapper = "div"

        classes = f"snippet snippet-{fragment.kind.value}"
        if css_class:
            classes = f"{classes} {css_class}"
        return (
            f'<{wrapper} class="{html.escape(classes)}"'
            f' data-snippet-id="{fragment.id}"'
            f' data-snippet-slug="{html.escape(fragment.slug)}">'
            f"{outcome.output}</{wrapper}>"
        )

    def expand_markers(self, scope: RequestScope, content: str) -> str:
        """Replace `[snippet id="N"]` / `[snippet slug="x"]` markers in host content."""

        def _replace(match: re.Match) -> str:
            attrs = {}
            for m in _MARKER_ATTR.finditer(match.group(1)):
                value = next(v for v in m.groups()[1:] if v is not None)
                attrs[m.group(1).lower()] = value
            ref = attrs.get("id") or attrs.get("slug")
            if not ref:
                return self._inline_error(scope, "Marker needs an id or slug.")
            if "id" in attrs and not attrs["id"].isdigit():
                return self._inline_error(scope, NOT_FOUND_MESSAGE)
            return self.render_marker(
                scope,
                int(ref) if "id" in attrs else ref,
                wrapper=attrs.get("wrapper", "div"),
                css_class=attrs.get("class", ""),
            )

        return self._marker_pattern.sub(_replace, content or "")

    def _lookup(self, ref: Union[int, str]) -> Optional[Fragment]:
        if isinstance(ref, int):
            return self.store.get(ref)
        ref = str(ref).strip()
        if ref.isdigit():
            return self.store.get(int(ref))
        return self.store.get_by_slug(ref)

    # ── Operator tools ────────────────────────────────────────────────────

    def test_run(
        self, fragment_id: int, context: Optional[RequestContext] = None
    ) -> ExecutionResult:
        """Execute one fragment on demand. Never trips the breaker."""
        fragment = self.store.get(fragment_id)
        if fragment is None:
            raise FragmentNotFound(fragment_id)
        context = context or RequestContext(can_manage=True)
        with request_context(context):
            return self.executor.execute(fragment, context)

    def consume_diagnostics(self) -> list[ExecutionDiagnostic]:
        return self.store.consume_diagnostics()

    # ── Rendering helpers ─────────────────────────────────────────────────

    def _error_html(self, message: str) -> str:
        return (
            f'<div class="{html.escape(self.config.error_css_class)}">'
            f"{html.escape(message)}</div>"
        )

    def _inline_error(self, scope: RequestScope, message: str) -> str:
        """Visible to privileged viewers only."""
        if not scope.context.can_manage:
            return ""
        return self._error_html(message)
