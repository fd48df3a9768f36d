"""
snipgate.execution.executor — Sandboxed in-process fragment execution.

Per execution: VALIDATING → FILTERING → EXECUTING → SUCCEEDED | FAILED.

Safety layers for server-logic fragments (best effort, not a security boundary):
  1. Repeated html-entity decoding, then syntax validation (no execution)
  2. Deny-list of process/eval calls (GuardrailEngine)
  3. sys.addaudithook refuses process-spawning events while a fragment runs
  4. Wall-clock time budget (SIGALRM, POSIX main thread only)
  5. stdout captured, warnings trapped, every exception converted to a result
"""

from __future__ import annotations

import builtins
import html
import io
import logging
import signal
import sys
import threading
import time
import warnings
from contextlib import contextmanager, redirect_stdout
from contextvars import ContextVar
from typing import Callable, Optional

from snipgate.safety.guardrails import GuardrailEngine, GuardrailViolation
from snipgate.safety.sanitizers import (
    MarkupSanitizer,
    sanitize_script,
    sanitize_stylesheet,
)
from snipgate.safety.syntax_validator import SyntaxValidator
from snipgate.utils.config import SandboxConfig
from snipgate.utils.enums import ErrorKind, ExecutionState, Kind
from snipgate.utils.types import ExecutionResult, Fragment, RequestContext

logger = logging.getLogger(__name__)

# ── Audit Hook ───────────────────────────────────────────────────────────────

_BLOCKED_AUDIT_EVENTS = frozenset(
    {
        "os.system",
        "os.exec",
        "os.spawn",
        "os.posix_spawn",
        "os.fork",
        "os.forkpty",
        "subprocess.Popen",
        "ctypes.dlopen",
        "webbrowser.open",
    }
)

# True only on the thread/context currently running a fragment
_guard_armed: ContextVar[bool] = ContextVar("snipgate_guard_armed", default=False)
_hook_lock = threading.Lock()
_hook_installed = False


def _audit_hook(event: str, args, _blocked=_BLOCKED_AUDIT_EVENTS, _armed=_guard_armed):
    if event in _blocked and _armed.get():
        raise RuntimeError(f"BLOCKED by audit hook: {event}")


def _ensure_audit_hook():
    """Audit hooks cannot be removed, so install exactly once per process."""
    global _hook_installed
    with _hook_lock:
        if not _hook_installed:
            sys.addaudithook(_audit_hook)
            _hook_installed = True


@contextmanager
def _armed_guard(enabled: bool):
    if not enabled:
        yield
        return
    _ensure_audit_hook()
    token = _guard_armed.set(True)
    try:
        yield
    finally:
        _guard_armed.reset(token)


# ── Time Budget ──────────────────────────────────────────────────────────────


class TimeBudgetExceeded(Exception):
    """Raised inside a fragment when it runs past its time budget."""


@contextmanager
def _time_budget(seconds: float):
    usable = (
        seconds > 0
        and hasattr(signal, "setitimer")
        and threading.current_thread() is threading.main_thread()
    )
    if not usable:
        yield
        return

    def _on_alarm(signum, frame):
        raise TimeBudgetExceeded(f"exceeded time budget of {seconds:g}s")

    previous = signal.signal(signal.SIGALRM, _on_alarm)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        yield
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(
            signal.SIGALRM, previous if previous is not None else signal.SIG_DFL
        )


# ── Helpers ──────────────────────────────────────────────────────────────────


def decode_entities(text: str, max_passes: int = 5) -> str:
    """Undo html-entity encoding applied by storage, up to `max_passes` times."""
    for _ in range(max(0, max_passes)):
        decoded = html.unescape(text)
        if decoded == text:
            break
        text = decoded
    return text


def describe_exception(exc: BaseException) -> str:
    """'Type: message' for a fragment exception, even when its __str__ is broken."""
    name = type(exc).__name__
    try:
        detail = str(exc)
    except Exception:
        try:
            detail = repr(exc)
        except Exception:
            detail = "<unprintable>"
    return f"{name}: {detail}" if detail else name


def _make_echo(buffer: io.StringIO) -> Callable[..., None]:
    def echo(*parts) -> None:
        """Write to the fragment output without a trailing newline."""
        buffer.write("".join(str(p) for p in parts))

    return echo


class SandboxedExecutor:
    """Validates, filters and runs fragments, always returning an ExecutionResult.

    Construct once per host process and pass it to the gateway.
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        validator: Optional[SyntaxValidator] = None,
        guardrail: Optional[GuardrailEngine] = None,
        markup_sanitizer: Optional[MarkupSanitizer] = None,
    ):
        self.config = config or SandboxConfig()
        self.validator = validator or SyntaxValidator()
        self.guardrail = guardrail or GuardrailEngine(self.config)
        self.markup_sanitizer = markup_sanitizer or MarkupSanitizer()

        self._filters: dict[Kind, Callable[[str, Fragment], str]] = {
            Kind.SERVER_LOGIC: self._filter_server_logic,
            Kind.SCRIPT: lambda code, _f: sanitize_script(code),
            Kind.STYLESHEET: lambda code, _f: sanitize_stylesheet(code),
            Kind.MARKUP: lambda code, _f: self.markup_sanitizer.sanitize(code),
        }
        missing = set(Kind) - set(self._filters)
        if missing:
            raise RuntimeError(f"No filter registered for {missing}")

    # ── Public API ────────────────────────────────────────────────────────

    def execute(
        self, fragment: Fragment, context: Optional[RequestContext] = None
    ) -> ExecutionResult:
        """Run one fragment. Never raises for fragment-level problems."""
        start = time.time()
        result = self._execute(fragment, context)
        result.duration_ms = (time.time() - start) * 1000
        logger.debug(
            "Fragment #%d (%s) %s in %.1fms",
            fragment.id,
            fragment.kind.value,
            result.state.name,
            result.duration_ms,
        )
        return result

    # ── Internal ──────────────────────────────────────────────────────────

    def _execute(
        self, fragment: Fragment, context: Optional[RequestContext]
    ) -> ExecutionResult:
        # Validating
        source = decode_entities(fragment.source or "", self.config.max_decode_passes)

        validation = self.validator.validate(source, fragment.kind)
        if not validation.valid:
            return ExecutionResult.failed(
                f"{fragment.kind.value} syntax error: {validation.describe()}",
                ErrorKind.SYNTAX,
            )

        # Filtering
        try:
            filtered = self._filters[fragment.kind](source, fragment)
        except GuardrailViolation as gv:
            return ExecutionResult.failed(gv.detail, ErrorKind.SECURITY)

        # Executing. Only server-logic is interpreted; the rest is injected text.
        if fragment.kind is Kind.SERVER_LOGIC:
            return self._run_python(filtered, fragment, context)

        return ExecutionResult(
            success=True,
            output=self._cap(filtered, fragment),
            state=ExecutionState.SUCCEEDED,
        )

    def _filter_server_logic(self, source: str, fragment: Fragment) -> str:
        self.guardrail.check(source, fragment.id)
        return source

    def _run_python(
        self, source: str, fragment: Fragment, context: Optional[RequestContext]
    ) -> ExecutionResult:
        buffer = io.StringIO()
        namespace = {
            "__name__": f"__snippet_{fragment.id}__",
            "__builtins__": builtins,
            "echo": _make_echo(buffer),
            "context": context,
        }

        try:
            # Parse-to-bytecode only; the validator already accepted it
            code = compile(source, f"<snippet #{fragment.id}>", "exec")
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                with _armed_guard(not self.config.allow_dangerous_operations):
                    with redirect_stdout(buffer), _time_budget(
                        self.config.time_budget_seconds
                    ):
                        exec(code, namespace)
        except BaseException as e:
            # Nothing a fragment raises may reach the host. Partial output is discarded.
            message = describe_exception(e)
            logger.info("Fragment #%d raised %s", fragment.id, message)
            return ExecutionResult.failed(message, ErrorKind.RUNTIME)

        for w in caught:
            logger.debug(
                "Fragment #%d warning suppressed: %s: %s",
                fragment.id,
                w.category.__name__,
                w.message,
            )

        return ExecutionResult(success=True, output=self._cap(buffer.getvalue(), fragment))

    def _cap(self, output: str, fragment: Fragment) -> str:
        limit = self.config.max_output_chars
        if limit and len(output) > limit:
            logger.warning(
                "Fragment #%d output truncated (%d > %d chars)",
                fragment.id,
                len(output),
                limit,
            )
            return output[:limit]
        return output
