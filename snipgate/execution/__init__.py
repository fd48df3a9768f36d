"""
snipgate.execution — Sandboxed in-process execution of fragments.
"""

from snipgate.execution.executor import SandboxedExecutor, TimeBudgetExceeded

__all__ = ["SandboxedExecutor", "TimeBudgetExceeded"]
