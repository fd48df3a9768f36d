"""
tests/test_syntax_validator.py — Static syntax checks per fragment kind.
"""

import pytest

from snipgate.safety.syntax_validator import SyntaxValidator
from snipgate.utils.enums import Kind


@pytest.fixture
def validator():
    return SyntaxValidator()


# ── Python ───────────────────────────────────────────────────────────────────


class TestPython:
    def test_accepts_valid_source(self, validator):
        source = "def greet(name):\n    return f'hi {name}'\n\necho(greet('x'))\n"
        result = validator.validate(source, Kind.SERVER_LOGIC)
        assert result.valid
        assert result.error == ""

    def test_unbalanced_brace_reports_line(self, validator):
        source = "x = 1\ndata = {'a': 1\ny = 2\n"
        result = validator.validate(source, Kind.SERVER_LOGIC)
        assert not result.valid
        assert result.line > 0

    def test_unclosed_paren_at_eof(self, validator):
        result = validator.validate("print('a'\n", Kind.SERVER_LOGIC)
        assert not result.valid
        assert result.line == 1

    def test_unterminated_string(self, validator):
        result = validator.validate("x = 1\nname = 'oops\n", Kind.SERVER_LOGIC)
        assert not result.valid
        assert result.line == 2

    def test_grammar_error_caught_by_parser(self, validator):
        result = validator.validate("x = = 1\n", Kind.SERVER_LOGIC)
        assert not result.valid
        assert result.line == 1
        assert "Syntax error" in result.error

    def test_never_executes_source(self, validator, tmp_path):
        marker = tmp_path / "ran.txt"
        source = f"open({str(marker)!r}, 'w').write('x')\n"
        assert validator.validate(source, Kind.SERVER_LOGIC).valid
        assert not marker.exists()

    def test_describe_includes_line(self, validator):
        result = validator.validate("if True:\n    x = (1,\n", Kind.SERVER_LOGIC)
        assert not result.valid
        assert f"on line {result.line}" in result.describe()


# ── Script / Stylesheet ──────────────────────────────────────────────────────


class TestScript:
    def test_accepts_balanced(self, validator):
        source = "function f(a) {\n  return [a, {b: ')'}];\n}\n// trailing )\n"
        assert validator.validate(source, Kind.SCRIPT).valid

    def test_unclosed_block(self, validator):
        result = validator.validate("function f() {\n  go();\n", Kind.SCRIPT)
        assert not result.valid
        assert result.line == 1
        assert "Unclosed '{'" in result.error

    def test_mismatched_closer(self, validator):
        result = validator.validate("call(1, 2];", Kind.SCRIPT)
        assert not result.valid
        assert "does not match" in result.error

    def test_template_literal_spans_lines(self, validator):
        assert validator.validate("const s = `a\n(b\n`;", Kind.SCRIPT).valid

    @pytest.mark.parametrize(
        "source",
        [
            "var re = /'/g;\nvar s = 'ok';",
            "if (/[)\"]/.test(s)) { go(); }",
            "const parts = s.split(/\\/(?=[{(])/);",
            "function f(s) {\n  return /\\}/.test(s);\n}",
        ],
    )
    def test_regex_literals_skipped(self, validator, source):
        assert validator.validate(source, Kind.SCRIPT).valid

    def test_division_is_not_a_regex(self, validator):
        result = validator.validate("var x = (a) / 2 / (b;", Kind.SCRIPT)
        assert not result.valid
        assert "Unclosed '('" in result.error

    def test_unterminated_comment(self, validator):
        result = validator.validate("a();\n/* never closed", Kind.SCRIPT)
        assert not result.valid
        assert result.line == 2


class TestStylesheet:
    def test_accepts_rules(self, validator):
        source = "body { background: url(//cdn.example.com/x.png); }\n"
        assert validator.validate(source, Kind.STYLESHEET).valid

    def test_unclosed_rule(self, validator):
        result = validator.validate("a { color: red;\n\nb { }\n", Kind.STYLESHEET)
        assert not result.valid
        assert result.line == 1


# ── Markup ───────────────────────────────────────────────────────────────────


class TestMarkup:
    def test_accepts_markup_with_inline_script(self, validator):
        source = "<div class='x'>\n<script>if (a < b) { go(); }</script>\n</div>"
        assert validator.validate(source, Kind.MARKUP).valid

    def test_unterminated_comment(self, validator):
        result = validator.validate("<p>ok</p>\n<!-- dangling", Kind.MARKUP)
        assert not result.valid
        assert result.line == 2

    def test_unclosed_script_element(self, validator):
        result = validator.validate("<p>x</p>\n<script>alert(1)", Kind.MARKUP)
        assert not result.valid
        assert "script" in result.error

    def test_unclosed_tag(self, validator):
        result = validator.validate("<div class='a'\n<p>x</p>", Kind.MARKUP)
        assert not result.valid
        assert result.line == 1

    def test_text_less_than_is_fine(self, validator):
        assert validator.validate("<p>1 < 2</p>", Kind.MARKUP).valid


# ── Common behaviour ─────────────────────────────────────────────────────────


class TestCommon:
    @pytest.mark.parametrize("kind", list(Kind))
    def test_empty_source_is_valid(self, validator, kind):
        assert validator.validate("", kind).valid
        assert validator.validate("   \n", kind).valid

    def test_skip_override_is_logged(self, validator, caplog):
        with caplog.at_level("WARNING", logger="snipgate.safety.syntax_validator"):
            result = validator.validate("x = (", Kind.SERVER_LOGIC, skip=True)
        assert result.valid
        assert "override" in caplog.text
