"""
snipgate.utils.config — Centralized configuration with YAML loading and defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# Process/shell invocation, arbitrary evaluation, runtime code generation.
DEFAULT_DENIED_FUNCTIONS = [
    "system",
    "popen",
    "spawnl",
    "spawnle",
    "spawnlp",
    "spawnv",
    "spawnve",
    "spawnvp",
    "execl",
    "execle",
    "execlp",
    "execv",
    "execve",
    "execvp",
    "fork",
    "forkpty",
    "check_output",
    "check_call",
    "getoutput",
    "getstatusoutput",
    "create_subprocess_exec",
    "create_subprocess_shell",
    "eval",
    "exec",
    "__import__",
]


@dataclass
class SandboxConfig:
    denied_functions: list[str] = field(
        default_factory=lambda: list(DEFAULT_DENIED_FUNCTIONS)
    )
    extra_denied_functions: list[str] = field(default_factory=list)
    # Operator capability flag. Skips the deny-list filter and the audit hook.
    allow_dangerous_operations: bool = False
    max_decode_passes: int = 5  # html-entity decoding passes before inspection
    time_budget_seconds: float = 5.0  # 0 disables the budget
    max_output_chars: int = 100_000


@dataclass
class GatewayConfig:
    wrap_script_output: bool = True  # wrap script kind in <script> tags
    wrap_stylesheet_output: bool = True  # wrap stylesheet kind in <style> tags
    error_css_class: str = "snippet-error"
    marker_tag: str = "snippet"  # [snippet id="3"] / [snippet slug="x"]


@dataclass
class StoreConfig:
    persist_path: str = "state/snippets.json"  # "" keeps everything in memory
    max_revisions: int = 10
    diagnostic_ttl_seconds: int = 3600


@dataclass
class ObservabilityConfig:
    log_dir: str = "logs"
    log_file: str = "snipgate.jsonl"
    console_level: str = "INFO"


@dataclass
class SnipgateConfig:
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    debug: bool = False

    @classmethod
    def load(cls, config_path: str = "snipgate.yaml") -> "SnipgateConfig":
        """Load configuration from YAML file, falling back to defaults."""
        config = cls()
        path = Path(config_path)
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            config = cls._merge(config, data)
        return config

    @classmethod
    def _merge(cls, config: "SnipgateConfig", data: dict) -> "SnipgateConfig":
        """Merge dict data into config dataclass recursively."""
        for section_name, section_data in data.items():
            if hasattr(config, section_name):
                section = getattr(config, section_name)
                if isinstance(section_data, dict) and hasattr(
                    section, "__dataclass_fields__"
                ):
                    for key, value in section_data.items():
                        if hasattr(section, key):
                            setattr(section, key, value)
                else:
                    setattr(config, section_name, section_data)
        return config

    def ensure_dirs(self):
        """Create all required data directories."""
        dirs = [self.observability.log_dir]
        if self.store.persist_path:
            dirs.append(os.path.dirname(self.store.persist_path) or "state")
        for d in dirs:
            Path(d).mkdir(parents=True, exist_ok=True)
