"""
snipgate.core.services — Wires the store, executor, gateway and editor together.
"""

from __future__ import annotations

import logging

from snipgate.core.conditions import ConditionEvaluator
from snipgate.core.editor import SnippetEditor
from snipgate.core.gateway import ExecutionGateway
from snipgate.core.store import FragmentStore
from snipgate.execution.executor import SandboxedExecutor
from snipgate.utils.config import SnipgateConfig

logger = logging.getLogger(__name__)


class SnippetServices:
    """
    One instance per host process. Everything is built from a SnipgateConfig
    and shared by reference; nothing here is a module-level singleton.
    """

    def __init__(self, config: SnipgateConfig):
        self.config = config
        self.store = FragmentStore.from_config(config.store)
        self.executor = SandboxedExecutor(config.sandbox)
        self.evaluator = ConditionEvaluator()
        self.gateway = ExecutionGateway(
            self.store, self.executor, self.evaluator, config.gateway
        )
        self.editor = SnippetEditor(self.store, self.executor)

        if config.sandbox.allow_dangerous_operations:
            logger.warning("Dangerous operations are ALLOWED for server-logic fragments")
        logger.info(
            "Snippet services ready (%d fragment(s) stored)", self.store.count()
        )
