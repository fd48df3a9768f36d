"""
snipgate.core.conditions — Declarative run-condition evaluation.

A fragment's conditions are a set of optional predicate families. Every family
present must pass (AND); inside a family any listed value may match (OR).
Absent or empty families are skipped. Malformed payloads fail open.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from snipgate.core.context import get_current_context
from snipgate.utils.enums import DeviceType, PageType
from snipgate.utils.types import Fragment, RequestContext

logger = logging.getLogger(__name__)

# Legacy category names and spelling variants
_PAGE_TYPE_ALIASES = {
    "front_page": PageType.LANDING,
    "page": PageType.LISTING,
    "404": PageType.NOT_FOUND,
    "search_results": PageType.SEARCH,
    "single_item": PageType.SINGLE,
    "admin_area": PageType.ADMIN,
}

_AUTH_STATUS = {
    "authenticated": True,
    "logged_in": True,
    "unauthenticated": False,
    "logged_out": False,
}

GUEST_ROLE = "guest"


def parse_conditions(raw: Any) -> dict:
    """Decode a stored conditions payload. Anything unusable becomes {}."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            decoded = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
            logger.warning("Unparsable conditions payload ignored: %.80r", raw)
            return {}
        if isinstance(decoded, dict):
            return decoded
        logger.warning("Conditions payload is not an object: %.80r", raw)
    return {}


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [v for v in value if v not in (None, "")]
    if value == "":
        return []
    return [value]


def _norm(value: Any) -> str:
    return str(value).strip().lower().replace("-", "_")


def _page_type(value: Any) -> Optional[PageType]:
    key = _norm(value)
    if key in _PAGE_TYPE_ALIASES:
        return _PAGE_TYPE_ALIASES[key]
    try:
        return PageType(key)
    except ValueError:
        return None


def wildcard_to_regex(pattern: str) -> re.Pattern:
    """`*` matches any substring; everything else is literal. Full-URL match."""
    parts = [re.escape(p) for p in str(pattern).split("*")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def _from_epoch(value: Any) -> Optional[datetime]:
    # NaN, infinities and out-of-range epochs are unusable, not fatal
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch seconds → aware UTC datetime. None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(value)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return _from_epoch(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ConditionEvaluator:
    """Decides whether a fragment should run for the current request.

    `context_provider` returns the current RequestContext; by default the one
    bound by the gateway for the request being processed.
    """

    def __init__(
        self, context_provider: Optional[Callable[[], RequestContext]] = None
    ):
        self._context_provider = context_provider or get_current_context
        # Checked in this order; first failure short-circuits
        self._families: list[tuple[str, Callable[[dict, RequestContext], Optional[bool]]]] = [
            ("page_type", self._check_page_type),
            ("content_type", self._check_content_type),
            ("user_role", self._check_user_role),
            ("auth_status", self._check_auth_status),
            ("device_type", self._check_device_type),
            ("url_pattern", self._check_url_pattern),
            ("date_range", self._check_date_range),
        ]

    # ── Public API ────────────────────────────────────────────────────────

    def should_run(self, fragment: Fragment) -> bool:
        if not fragment.active or fragment.deleted:
            return False

        conditions = parse_conditions(fragment.conditions)
        if not conditions:
            return True

        context = self._context_provider()
        for name, check in self._families:
            outcome = check(conditions, context)
            if outcome is False:
                logger.debug(
                    "Fragment #%d skipped: %s condition not met", fragment.id, name
                )
                return False
        return True

    # ── Families ──────────────────────────────────────────────────────────
    # Each returns True (pass), False (fail) or None (family absent, skip).

    def _check_page_type(self, conditions: dict, ctx: RequestContext) -> Optional[bool]:
        wanted = _as_list(conditions.get("page_type"))
        if not wanted:
            return None
        for value in wanted:
            page_type = _page_type(value)
            if page_type is not None and page_type in ctx.page_types:
                return True
        return False

    def _check_content_type(
        self, conditions: dict, ctx: RequestContext
    ) -> Optional[bool]:
        wanted = _as_list(conditions.get("content_type", conditions.get("post_type")))
        if not wanted:
            return None
        if not ctx.content_type:
            return False
        return ctx.content_type in {str(v) for v in wanted}

    def _check_user_role(self, conditions: dict, ctx: RequestContext) -> Optional[bool]:
        wanted = {str(v) for v in _as_list(conditions.get("user_role"))}
        if not wanted:
            return None
        if not ctx.authenticated:
            return GUEST_ROLE in wanted
        return bool(wanted & set(ctx.user_roles))

    def _check_auth_status(
        self, conditions: dict, ctx: RequestContext
    ) -> Optional[bool]:
        raw = conditions.get("auth_status", conditions.get("login_status"))
        if raw in (None, ""):
            return None
        expected = _AUTH_STATUS.get(_norm(raw))
        if expected is None:
            logger.warning("Unknown auth_status condition %r ignored", raw)
            return None
        return ctx.authenticated is expected

    def _check_device_type(
        self, conditions: dict, ctx: RequestContext
    ) -> Optional[bool]:
        wanted = {_norm(v) for v in _as_list(conditions.get("device_type"))}
        if not wanted:
            return None
        if DeviceType.MOBILE.value in wanted and ctx.device is DeviceType.MOBILE:
            return True
        if DeviceType.DESKTOP.value in wanted and ctx.device is not DeviceType.MOBILE:
            return True
        return False

    def _check_url_pattern(
        self, conditions: dict, ctx: RequestContext
    ) -> Optional[bool]:
        patterns = _as_list(conditions.get("url_pattern"))
        if not patterns:
            return None
        return any(wildcard_to_regex(p).match(ctx.url or "") for p in patterns)

    def _check_date_range(self, conditions: dict, ctx: RequestContext) -> Optional[bool]:
        date_range = conditions.get("date_range")
        if isinstance(date_range, dict):
            raw_from = date_range.get("from")
            raw_to = date_range.get("to")
        else:
            raw_from = conditions.get("date_from")
            raw_to = conditions.get("date_to")

        if raw_from in (None, "") and raw_to in (None, ""):
            return None

        now = ctx.now if ctx.now.tzinfo else ctx.now.replace(tzinfo=timezone.utc)

        start = parse_timestamp(raw_from)
        if raw_from not in (None, "") and start is None:
            logger.warning("Unparsable date_range 'from' ignored: %r", raw_from)
        if start is not None and now < start:
            return False

        end = parse_timestamp(raw_to)
        if raw_to not in (None, "") and end is None:
            logger.warning("Unparsable date_range 'to' ignored: %r", raw_to)
        if end is not None and now > end:
            return False

        return True
