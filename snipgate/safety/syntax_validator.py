"""
snipgate.safety.syntax_validator — Static syntax checks for stored fragments.

Never executes the candidate source:
  - server-logic (Python): tokenize pass for delimiters/strings, then ast.parse
  - script / stylesheet: balanced-delimiter scan that skips strings and comments
  - markup: angle-bracket balance, comments, raw-text elements
"""

from __future__ import annotations

import ast
import io
import logging
import re
import tokenize

from snipgate.utils.enums import Kind
from snipgate.utils.types import ValidationResult

logger = logging.getLogger(__name__)

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}

_VALID = ValidationResult(valid=True)


class SyntaxValidator:
    """Kind-aware syntax validator.

    Stateless; one instance can be shared by the editor, importer and executor.
    """

    def __init__(self):
        self._checks = {
            Kind.SERVER_LOGIC: self._check_python,
            Kind.SCRIPT: self._check_script,
            Kind.STYLESHEET: self._check_stylesheet,
            Kind.MARKUP: self._check_markup,
        }
        missing = set(Kind) - set(self._checks)
        if missing:
            raise RuntimeError(f"No syntax check registered for {missing}")

    def validate(self, source: str, kind: Kind, skip: bool = False) -> ValidationResult:
        """Return a ValidationResult for `source` interpreted as `kind`.

        `skip=True` is the operator override: nothing is checked and the use of
        the override is logged.
        """
        if skip:
            logger.warning(
                "Syntax validation skipped by operator override (kind=%s, %d chars)",
                kind.value,
                len(source or ""),
            )
            return _VALID

        if not source or not source.strip():
            return _VALID

        return self._checks[kind](source)

    # ── Python ────────────────────────────────────────────────────────────

    def _check_python(self, source: str) -> ValidationResult:
        result = self._tokenize_python(source)
        if not result.valid:
            return result

        try:
            ast.parse(source, mode="exec")
        except SyntaxError as e:
            return ValidationResult(
                valid=False,
                error=f"Syntax error: {e.msg}",
                line=e.lineno or 0,
            )
        except ValueError as e:  # null bytes
            return ValidationResult(valid=False, error=f"Syntax error: {e}")
        return _VALID

    @staticmethod
    def _tokenize_python(source: str) -> ValidationResult:
        """Delimiter/string pass with the tokenizer. Gives precise lines."""
        stack: list[tuple[str, int]] = []
        readline = io.StringIO(source).readline
        try:
            for tok in tokenize.generate_tokens(readline):
                if tok.type == tokenize.ERRORTOKEN and tok.string.strip() in ("'", '"'):
                    return ValidationResult(
                        valid=False,
                        error="Unterminated string literal",
                        line=tok.start[0],
                    )
                if tok.type != tokenize.OP:
                    continue
                if tok.string in _OPENERS:
                    stack.append((tok.string, tok.start[0]))
                elif tok.string in _CLOSERS:
                    if not stack:
                        return ValidationResult(
                            valid=False,
                            error=f"Unmatched closing '{tok.string}'",
                            line=tok.start[0],
                        )
                    opener, opened_at = stack.pop()
                    if _OPENERS[opener] != tok.string:
                        return ValidationResult(
                            valid=False,
                            error=(
                                f"Closing '{tok.string}' does not match "
                                f"'{opener}' opened on line {opened_at}"
                            ),
                            line=tok.start[0],
                        )
        except tokenize.TokenError as e:
            # EOF inside a bracket or a triple-quoted string. On 3.12+ the C
            # tokenizer also reports bracket mismatches through TokenError.
            message = e.args[0] if e.args else "unexpected end of source"
            if stack and "EOF" in message and "string" not in message:
                opener, opened_at = stack[-1]
                return ValidationResult(
                    valid=False,
                    error=f"Unclosed '{opener}'",
                    line=opened_at,
                )
            line = e.args[1][0] if len(e.args) > 1 and e.args[1] else 0
            return ValidationResult(
                valid=False, error=f"Syntax error: {message}", line=line or 0
            )
        except SyntaxError as e:
            # 3.12+ tokenizer raises for unterminated strings and bad indentation
            return ValidationResult(
                valid=False,
                error=f"Syntax error: {e.msg}",
                line=e.lineno or 0,
            )

        if stack:
            opener, opened_at = stack[-1]
            return ValidationResult(
                valid=False, error=f"Unclosed '{opener}'", line=opened_at
            )
        return _VALID

    # ── Script / Stylesheet ───────────────────────────────────────────────

    def _check_script(self, source: str) -> ValidationResult:
        return _scan_delimiters(
            source, quotes="'\"`", line_comments=True, regex_literals=True
        )

    def _check_stylesheet(self, source: str) -> ValidationResult:
        return _scan_delimiters(source, quotes="'\"", line_comments=False)

    # ── Markup ────────────────────────────────────────────────────────────

    def _check_markup(self, source: str) -> ValidationResult:
        comment_open = source.find("<!--")
        while comment_open != -1:
            comment_close = source.find("-->", comment_open + 4)
            if comment_close == -1:
                return ValidationResult(
                    valid=False,
                    error="Unterminated HTML comment",
                    line=_line_at(source, comment_open),
                )
            comment_open = source.find("<!--", comment_close + 3)

        stripped = _HTML_COMMENT.sub(lambda m: "\n" * m.group(0).count("\n"), source)

        for tag in ("script", "style"):
            opens = [m.start() for m in re.finditer(rf"<{tag}\b", stripped, re.I)]
            closes = len(re.findall(rf"</{tag}\s*>", stripped, re.I))
            if len(opens) > closes:
                return ValidationResult(
                    valid=False,
                    error=f"Unclosed <{tag}> element",
                    line=_line_at(stripped, opens[closes]),
                )

        # Raw text inside script/style may legally contain '<' and '>'
        outside = _RAW_TEXT.sub(lambda m: "\n" * m.group(0).count("\n"), stripped)
        depth_start = -1
        for i, ch in enumerate(outside):
            if ch == "<":
                if depth_start != -1 and _looks_like_tag(outside, i):
                    return ValidationResult(
                        valid=False,
                        error="Unclosed tag ('<' without matching '>')",
                        line=_line_at(outside, depth_start),
                    )
                if _looks_like_tag(outside, i):
                    depth_start = i
            elif ch == ">" and depth_start != -1:
                depth_start = -1
        if depth_start != -1:
            return ValidationResult(
                valid=False,
                error="Unclosed tag ('<' without matching '>')",
                line=_line_at(outside, depth_start),
            )
        return _VALID


_HTML_COMMENT = re.compile(r"<!--.*?-->", re.S)
_RAW_TEXT = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.S | re.I)


def _looks_like_tag(text: str, i: int) -> bool:
    nxt = text[i + 1 : i + 2]
    return bool(nxt) and (nxt.isalpha() or nxt in "/!?")


def _line_at(text: str, index: int) -> int:
    return text.count("\n", 0, index) + 1


# A '/' after one of these starts a regex literal rather than a division
_REGEX_PRECEDERS = set("(,=:[!&|?{};+-*%<>~^")
_REGEX_KEYWORDS = frozenset(
    {
        "return", "typeof", "instanceof", "case", "do", "else", "in", "of",
        "void", "throw", "new", "delete", "yield", "await",
    }
)


def _regex_allowed_at(source: str, i: int) -> bool:
    j = i - 1
    while j >= 0 and source[j] in " \t\r":
        j -= 1
    if j < 0 or source[j] == "\n":
        return True
    if source[j] in _REGEX_PRECEDERS:
        return True
    end = j + 1
    while j >= 0 and (source[j].isalnum() or source[j] in "_$"):
        j -= 1
    return source[j + 1 : end] in _REGEX_KEYWORDS


def _regex_literal_end(source: str, i: int) -> int:
    """Index just past the closing '/' of a regex literal at i, or -1."""
    in_class = False
    j = i + 1
    n = len(source)
    while j < n:
        c = source[j]
        if c == "\n":
            return -1
        if c == "\\":
            j += 2
            continue
        if c == "[":
            in_class = True
        elif c == "]":
            in_class = False
        elif c == "/" and not in_class:
            return j + 1
        j += 1
    return -1


def _scan_delimiters(
    source: str, quotes: str, line_comments: bool, regex_literals: bool = False
) -> ValidationResult:
    """Balanced ()[]{} scan that ignores string literals, comments and, for
    JavaScript, regex literals."""
    stack: list[tuple[str, int]] = []
    line = 1
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch == "\n":
            line += 1
            i += 1
            continue

        # Block comment
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            if end == -1:
                return ValidationResult(
                    valid=False, error="Unterminated comment", line=line
                )
            line += source.count("\n", i, end)
            i = end + 2
            continue

        # Line comment (JavaScript only; '//' is legal inside CSS urls)
        if line_comments and source.startswith("//", i):
            end = source.find("\n", i)
            i = n if end == -1 else end
            continue

        if regex_literals and ch == "/" and _regex_allowed_at(source, i):
            end = _regex_literal_end(source, i)
            if end != -1:
                i = end
                continue

        if ch in quotes:
            start_line = line
            j = i + 1
            while j < n:
                c = source[j]
                if c == "\\":
                    j += 2
                    continue
                if c == ch:
                    break
                if c == "\n":
                    if ch != "`":
                        return ValidationResult(
                            valid=False,
                            error="Unterminated string literal",
                            line=start_line,
                        )
                    line += 1
                j += 1
            else:
                return ValidationResult(
                    valid=False, error="Unterminated string literal", line=start_line
                )
            i = j + 1
            continue

        if ch in _OPENERS:
            stack.append((ch, line))
        elif ch in _CLOSERS:
            if not stack:
                return ValidationResult(
                    valid=False, error=f"Unmatched closing '{ch}'", line=line
                )
            opener, opened_at = stack.pop()
            if _OPENERS[opener] != ch:
                return ValidationResult(
                    valid=False,
                    error=f"Closing '{ch}' does not match '{opener}' opened on line {opened_at}",
                    line=line,
                )
        i += 1

    if stack:
        opener, opened_at = stack[-1]
        return ValidationResult(valid=False, error=f"Unclosed '{opener}'", line=opened_at)
    return _VALID
