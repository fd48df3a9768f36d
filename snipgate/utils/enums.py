"""
snipgate.utils.enums — All enumerations used across the snipgate package.
"""

from enum import Enum, auto


class Kind(Enum):
    """Content category of a fragment. Drives validator/filter/executor choice."""

    SERVER_LOGIC = "server-logic"  # Python, executed in-process
    SCRIPT = "script"  # JavaScript, injected as text
    STYLESHEET = "stylesheet"  # CSS, injected as text
    MARKUP = "markup"  # HTML, sanitized then injected

    @classmethod
    def coerce(cls, value) -> "Kind":
        """Accept a Kind, its value, its name, or a legacy short alias."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        alias = _KIND_ALIASES.get(key, key)
        for member in cls:
            if member.value == alias:
                return member
        raise ValueError(f"Unknown fragment kind: {value!r}")


_KIND_ALIASES = {
    "php": "server-logic",
    "python": "server-logic",
    "py": "server-logic",
    "server": "server-logic",
    "js": "script",
    "javascript": "script",
    "css": "stylesheet",
    "html": "markup",
}


class InjectionMode(Enum):
    """How a fragment gets triggered."""

    AUTO_INJECT = "auto-inject"  # ambient, every qualifying request
    ON_DEMAND_MARKER = "on-demand-marker"  # only where a marker appears

    @classmethod
    def coerce(cls, value) -> "InjectionMode":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        if key in ("auto-insert", "auto"):
            return cls.AUTO_INJECT
        if key in ("shortcode", "marker"):
            return cls.ON_DEMAND_MARKER
        return cls(key)


class Stage(Enum):
    """Host render-cycle stages (injection points). Listed in host order."""

    EARLY_REQUEST = "early-request"
    HEAD = "head"
    BODY = "body"
    FOOTER = "footer"
    STYLE_ENQUEUE = "style-enqueue"
    SCRIPT_ENQUEUE = "script-enqueue"

    @classmethod
    def coerce(cls, value) -> "Stage":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower().replace("_", "-"))


class ExecutionState(Enum):
    """Per-execution state machine of the sandboxed executor."""

    VALIDATING = auto()
    FILTERING = auto()
    EXECUTING = auto()
    SUCCEEDED = auto()  # terminal
    FAILED = auto()  # terminal


class ErrorKind(Enum):
    """Why an execution failed."""

    SYNTAX = "syntax"  # static: source does not parse
    SECURITY = "security"  # static: disallowed operation found
    RUNTIME = "runtime"  # dynamic: raised while running, trips the breaker


class PageType(Enum):
    """Page categories a host can flag on the current request."""

    HOME = "home"
    LANDING = "landing"
    SINGLE = "single"
    LISTING = "listing"
    ARCHIVE = "archive"
    SEARCH = "search"
    NOT_FOUND = "not_found"
    ADMIN = "admin"


class DeviceType(Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
