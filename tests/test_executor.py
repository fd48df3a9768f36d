"""
tests/test_executor.py — Tests for SandboxedExecutor.

Covers:
  - Server-logic execution and output capture
  - Deny-list refusal (SECURITY) and audit hook refusal (RUNTIME)
  - Syntax failures (SYNTAX) with line numbers
  - Time budget enforcement
  - Entity decoding before inspection
  - Script / stylesheet / markup filtering
"""

import pytest

from snipgate.execution.executor import SandboxedExecutor, decode_entities
from snipgate.utils.config import SandboxConfig
from snipgate.utils.enums import ErrorKind, ExecutionState, Kind
from snipgate.utils.types import Fragment, RequestContext


def make_fragment(source: str, kind: Kind = Kind.SERVER_LOGIC, **fields) -> Fragment:
    fields.setdefault("active", True)
    return Fragment(id=fields.pop("id", 1), kind=kind, source=source, **fields)


@pytest.fixture
def executor():
    return SandboxedExecutor(SandboxConfig(time_budget_seconds=5.0))


# ── Server-logic ─────────────────────────────────────────────────────────────


class TestServerLogic:
    def test_function_output_is_returned(self, executor):
        source = "def greet():\n    echo('hello')\n\ngreet()\n"
        result = executor.execute(make_fragment(source))
        assert result.success
        assert result.output == "hello"
        assert result.state is ExecutionState.SUCCEEDED

    def test_print_is_captured(self, executor):
        result = executor.execute(make_fragment("print('hello')"))
        assert result.success
        assert result.output == "hello\n"

    def test_execution_is_idempotent(self, executor):
        fragment = make_fragment("total = sum(range(5))\necho(total)\n")
        first = executor.execute(fragment)
        second = executor.execute(fragment)
        assert (first.success, first.output) == (second.success, second.output)
        assert first.output == "10"

    def test_fresh_namespace_per_run(self, executor):
        fragment = make_fragment(
            "try:\n    counter += 1\nexcept NameError:\n    counter = 1\necho(counter)\n"
        )
        assert executor.execute(fragment).output == "1"
        assert executor.execute(fragment).output == "1"

    def test_context_is_available(self, executor):
        ctx = RequestContext(url="https://example.com/shop")
        result = executor.execute(make_fragment("echo(context.url)"), ctx)
        assert result.output == "https://example.com/shop"

    def test_runtime_error_is_converted(self, executor):
        result = executor.execute(make_fragment("raise ValueError('boom')"))
        assert not result.success
        assert result.error == "ValueError: boom"
        assert result.error_kind is ErrorKind.RUNTIME
        assert result.state is ExecutionState.FAILED

    def test_partial_output_discarded_on_failure(self, executor):
        result = executor.execute(make_fragment("echo('partial')\n1 / 0\n"))
        assert not result.success
        assert result.output == ""
        assert result.error.startswith("ZeroDivisionError")

    def test_system_exit_is_contained(self, executor):
        result = executor.execute(make_fragment("raise SystemExit(3)"))
        assert not result.success
        assert result.error == "SystemExit: 3"

    def test_base_exception_subclass_is_contained(self, executor):
        source = "class Boom(BaseException):\n    pass\n\nraise Boom('x')\n"
        result = executor.execute(make_fragment(source))
        assert not result.success
        assert result.error == "Boom: x"
        assert result.error_kind is ErrorKind.RUNTIME

    def test_keyboard_interrupt_is_contained(self, executor):
        result = executor.execute(make_fragment("raise KeyboardInterrupt"))
        assert not result.success
        assert result.error == "KeyboardInterrupt"

    def test_unprintable_exception_is_contained(self, executor):
        source = (
            "class Sulky(Exception):\n"
            "    def __str__(self):\n"
            "        raise RuntimeError('nope')\n"
            "\n"
            "raise Sulky()\n"
        )
        result = executor.execute(make_fragment(source))
        assert not result.success
        assert result.error.startswith("Sulky: ")
        assert result.error_kind is ErrorKind.RUNTIME

    def test_warnings_are_trapped(self, executor, recwarn):
        source = "import warnings\nwarnings.warn('careful')\necho('ok')\n"
        result = executor.execute(make_fragment(source))
        assert result.success
        assert result.output == "ok"
        assert len(recwarn) == 0

    def test_output_is_capped(self):
        executor = SandboxedExecutor(SandboxConfig(max_output_chars=5))
        result = executor.execute(make_fragment("echo('abcdefgh')"))
        assert result.output == "abcde"

    def test_duration_recorded(self, executor):
        result = executor.execute(make_fragment("echo(1)"))
        assert result.duration_ms >= 0.0


# ── Refusals ─────────────────────────────────────────────────────────────────


class TestRefusals:
    def test_denied_call_is_security_failure(self, executor):
        result = executor.execute(make_fragment("import os\nos.system('ls')\n"))
        assert not result.success
        assert result.error == "contains disallowed operations"
        assert result.error_kind is ErrorKind.SECURITY

    def test_denied_call_hidden_by_entities(self, executor):
        result = executor.execute(make_fragment("import os\nos.system(&quot;ls&quot;)"))
        assert result.error_kind is ErrorKind.SECURITY

    def test_audit_hook_blocks_process_spawn(self, executor):
        source = "import subprocess\nsubprocess.run(['true'])\n"
        result = executor.execute(make_fragment(source))
        assert not result.success
        assert result.error_kind is ErrorKind.RUNTIME
        assert "BLOCKED by audit hook" in result.error

    def test_audit_hook_disarmed_after_run(self, executor):
        import subprocess
        import sys

        executor.execute(make_fragment("import subprocess\nsubprocess.run(['true'])\n"))
        completed = subprocess.run([sys.executable, "-c", "pass"])
        assert completed.returncode == 0

    def test_syntax_error_reports_line(self, executor):
        result = executor.execute(make_fragment("x = 1\ny = (2,\n"))
        assert not result.success
        assert result.error_kind is ErrorKind.SYNTAX
        assert result.error.startswith("server-logic syntax error:")
        assert "line 2" in result.error

    def test_time_budget(self):
        executor = SandboxedExecutor(SandboxConfig(time_budget_seconds=0.5))
        result = executor.execute(make_fragment("while True:\n    pass\n"))
        assert not result.success
        assert result.error_kind is ErrorKind.RUNTIME
        assert "time budget" in result.error


# ── Injected kinds ───────────────────────────────────────────────────────────


class TestInjectedKinds:
    def test_stylesheet_import_stripped(self, executor):
        source = "@import url(https://fonts.example/x.css);\nh1 { color: red; }"
        result = executor.execute(make_fragment(source, Kind.STYLESHEET))
        assert result.success
        assert "@import" not in result.output
        assert "h1 { color: red; }" in result.output

    def test_script_wrappers_stripped(self, executor):
        source = "<script>\nwindow.ready = true;\n</script>"
        result = executor.execute(make_fragment(source, Kind.SCRIPT))
        assert result.success
        assert result.output == "window.ready = true;"

    def test_script_is_never_run_as_python(self, executor):
        result = executor.execute(make_fragment("system('x');", Kind.SCRIPT))
        assert result.success

    def test_markup_sanitized(self, executor):
        source = '<p onclick="x()">Hi</p>'
        result = executor.execute(make_fragment(source, Kind.MARKUP))
        assert result.success
        assert result.output == "<p>Hi</p>"

    def test_invalid_script_is_syntax_failure(self, executor):
        result = executor.execute(make_fragment("if (a) {", Kind.SCRIPT))
        assert result.error_kind is ErrorKind.SYNTAX


# ── Entity decoding ──────────────────────────────────────────────────────────


class TestDecodeEntities:
    def test_single_pass(self):
        assert decode_entities("echo(&quot;hi&quot;)") == 'echo("hi")'

    def test_nested_encoding(self):
        assert decode_entities("&amp;amp;lt;") == "<"

    def test_pass_limit(self):
        assert decode_entities("&amp;amp;lt;", max_passes=1) == "&amp;lt;"

    def test_decoded_source_runs(self, executor):
        result = executor.execute(make_fragment("echo(&#39;hi&#39;)"))
        assert result.output == "hi"
