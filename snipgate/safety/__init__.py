"""
snipgate.safety — Syntax validation, deny-list guardrails, and output sanitizers.
"""

from snipgate.safety.guardrails import GuardrailEngine, GuardrailViolation
from snipgate.safety.sanitizers import MarkupSanitizer
from snipgate.safety.syntax_validator import SyntaxValidator

__all__ = ["GuardrailEngine", "GuardrailViolation", "MarkupSanitizer", "SyntaxValidator"]
