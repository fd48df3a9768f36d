"""
snipgate.safety.sanitizers — Text filters for script, stylesheet and markup fragments.

None of these refuse a fragment. They strip or neutralise constructs and return
what is left; the host stays responsible for context-appropriate escaping.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import bleach

logger = logging.getLogger(__name__)


# ── Script ───────────────────────────────────────────────────────────────────

_SCRIPT_WRAPPER = re.compile(r"</?script[^>]*>", re.IGNORECASE)
_SCRIPT_OPENER = re.compile(r"<(/?)script", re.IGNORECASE)


def sanitize_script(code: str) -> str:
    """Remove <script> wrappers so the gateway can add exactly one."""
    code = _SCRIPT_WRAPPER.sub("", code)
    # Anything left that could still open or close a script element
    code = _SCRIPT_OPENER.sub(lambda m: "&lt;" + m.group(1) + "script", code)
    return code.strip()


# ── Stylesheet ───────────────────────────────────────────────────────────────

_STYLE_WRAPPER = re.compile(r"</?style[^>]*>", re.IGNORECASE)
_CSS_IMPORT = re.compile(r"@import\b[^;]*;?", re.IGNORECASE)
_CSS_EXPRESSION = re.compile(r"expression\s*\(", re.IGNORECASE)


def sanitize_stylesheet(code: str) -> str:
    """Strip <style> wrappers, remote @import directives and expression( constructs."""
    code = _STYLE_WRAPPER.sub("", code)
    # Repeat until stable; nested tokens can reassemble a construct
    while True:
        stripped = _CSS_EXPRESSION.sub("", _CSS_IMPORT.sub("", code))
        if stripped == code:
            break
        if _CSS_IMPORT.search(code):
            logger.debug("Removed @import directive(s) from stylesheet fragment")
        code = stripped
    return code.strip()


# ── Markup ───────────────────────────────────────────────────────────────────

# Rich-content allow-list, the same philosophy as a CMS post-content sanitizer.
DEFAULT_MARKUP_TAGS = frozenset(
    {
        "a", "abbr", "address", "article", "aside", "b", "blockquote", "br",
        "caption", "cite", "code", "col", "colgroup", "dd", "del", "details",
        "div", "dl", "dt", "em", "figcaption", "figure", "footer", "h1", "h2",
        "h3", "h4", "h5", "h6", "header", "hr", "i", "img", "ins", "kbd", "li",
        "main", "mark", "nav", "ol", "p", "pre", "q", "s", "section", "small",
        "span", "strong", "sub", "summary", "sup", "table", "tbody", "td",
        "tfoot", "th", "thead", "time", "tr", "u", "ul",
    }
)

_GLOBAL_ATTRIBUTES = ["class", "id", "title", "lang", "dir", "role"]

DEFAULT_MARKUP_ATTRIBUTES: dict[str, list[str]] = {
    "*": _GLOBAL_ATTRIBUTES,
    "a": _GLOBAL_ATTRIBUTES + ["href", "rel", "target", "name"],
    "img": _GLOBAL_ATTRIBUTES + ["src", "alt", "width", "height", "loading"],
    "td": _GLOBAL_ATTRIBUTES + ["colspan", "rowspan"],
    "th": _GLOBAL_ATTRIBUTES + ["colspan", "rowspan", "scope"],
    "time": _GLOBAL_ATTRIBUTES + ["datetime"],
    # Inline script/style are what make markup fragments useful
    "script": ["src", "type", "async", "defer"],
    "style": ["type", "media"],
}

DEFAULT_PROTOCOLS = frozenset({"http", "https", "mailto"})


class MarkupSanitizer:
    """Allow-list HTML sanitizer backed by bleach.

    Disallowed tags are stripped (their text kept), disallowed attributes and
    protocols dropped, comments removed.
    """

    def __init__(
        self,
        tags: Optional[frozenset[str]] = None,
        attributes: Optional[dict[str, list[str]]] = None,
        protocols: Optional[frozenset[str]] = None,
        allow_inline_code: bool = True,
    ):
        tags = set(tags or DEFAULT_MARKUP_TAGS)
        attributes = dict(attributes or DEFAULT_MARKUP_ATTRIBUTES)
        if allow_inline_code:
            tags.update({"script", "style"})
        else:
            tags.difference_update({"script", "style"})
            attributes.pop("script", None)
            attributes.pop("style", None)

        self._cleaner = bleach.Cleaner(
            tags=frozenset(tags),
            attributes=attributes,
            protocols=frozenset(protocols or DEFAULT_PROTOCOLS),
            strip=True,
            strip_comments=True,
        )

    def sanitize(self, html: str) -> str:
        if not html:
            return ""
        return self._cleaner.clean(html)
