"""
Tests for snipgate.safety.guardrails — deny-list filtering of server-logic source.
"""

import pytest

from snipgate.safety.guardrails import (
    DISALLOWED_MESSAGE,
    GuardrailEngine,
    GuardrailViolation,
)
from snipgate.utils.config import SandboxConfig


# ── Helpers ──────────────────────────────────────────────────────────────


def make_engine(**overrides) -> GuardrailEngine:
    cfg = SandboxConfig(**overrides)
    return GuardrailEngine(cfg)


# ── Deny-list ────────────────────────────────────────────────────────────


class TestDenyList:
    def test_blocks_os_system(self):
        engine = make_engine()
        with pytest.raises(GuardrailViolation, match="DISALLOWED_CALL") as exc:
            engine.check("import os\nos.system('ls')\n")
        assert exc.value.detail == DISALLOWED_MESSAGE

    def test_blocks_eval(self):
        engine = make_engine()
        with pytest.raises(GuardrailViolation):
            engine.check("x = eval('1 + 1')")

    def test_case_insensitive_and_spacing(self):
        engine = make_engine()
        with pytest.raises(GuardrailViolation):
            engine.check("os.SYSTEM  ('ls')")

    def test_word_boundary(self):
        engine = make_engine()
        # `filesystem(` and `evaluate(` are not denied names
        engine.check("filesystem('x')\nevaluate(3)\n")

    def test_name_without_call_is_allowed(self):
        engine = make_engine()
        engine.check("label = 'system'\nsystem_name = 1\n")

    def test_reports_longest_match(self):
        engine = make_engine()
        assert engine.find("os.execve('/bin/sh', [], {})") == "execve"

    def test_extra_denied_functions(self):
        engine = make_engine(extra_denied_functions=["unlink"])
        with pytest.raises(GuardrailViolation):
            engine.check("os.unlink('/tmp/x')")

    def test_empty_deny_list_allows_everything(self):
        engine = make_engine(denied_functions=[])
        engine.check("eval('1')")
        assert engine.find("eval('1')") is None

    def test_violations_are_counted(self):
        engine = make_engine()
        for _ in range(2):
            with pytest.raises(GuardrailViolation):
                engine.check("popen('ls')")
        assert engine.total_violations == 2


# ── Operator bypass ──────────────────────────────────────────────────────


class TestBypass:
    def test_bypass_skips_check_and_logs(self, caplog):
        engine = make_engine(allow_dangerous_operations=True)
        assert engine.bypassed
        with caplog.at_level("WARNING", logger="snipgate.safety.guardrails"):
            engine.check("os.system('ls')", fragment_id=7)
        assert "bypassed" in caplog.text
        assert "#7" in caplog.text
