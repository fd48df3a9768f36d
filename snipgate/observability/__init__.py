"""
snipgate.observability — Structured logging.
"""

from snipgate.observability.logger import setup_logging, JSONFormatter

__all__ = ["setup_logging", "JSONFormatter"]
