"""
snipgate.utils — Shared enumerations, dataclasses, and configuration.
"""

from snipgate.utils.enums import (
    Kind,
    InjectionMode,
    Stage,
    ExecutionState,
    ErrorKind,
    PageType,
    DeviceType,
)
from snipgate.utils.config import SnipgateConfig

__all__ = [
    "Kind",
    "InjectionMode",
    "Stage",
    "ExecutionState",
    "ErrorKind",
    "PageType",
    "DeviceType",
    "SnipgateConfig",
]
