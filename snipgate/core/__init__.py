"""
snipgate.core — Request gateway, condition evaluation, persistence, and editing.
"""

from snipgate.core.context import get_current_context, request_context
from snipgate.core.exceptions import (
    SnipgateError,
    InvariantViolation,
    ValidationFailed,
    FragmentNotFound,
    PersistenceError,
)
from snipgate.core.conditions import ConditionEvaluator
from snipgate.core.store import FragmentRepository, FragmentStore
from snipgate.core.editor import SnippetEditor, SaveOutcome, ImportReport
from snipgate.core.gateway import ExecutionGateway, RequestScope, StageResult
from snipgate.core.services import SnippetServices

__all__ = [
    "get_current_context",
    "request_context",
    "SnipgateError",
    "InvariantViolation",
    "ValidationFailed",
    "FragmentNotFound",
    "PersistenceError",
    "ConditionEvaluator",
    "FragmentRepository",
    "FragmentStore",
    "SnippetEditor",
    "SaveOutcome",
    "ImportReport",
    "ExecutionGateway",
    "RequestScope",
    "StageResult",
    "SnippetServices",
]
