"""Quick import check of every public snipgate module."""

import importlib

import pytest

MODULES = [
    "snipgate.utils",
    "snipgate.safety",
    "snipgate.execution",
    "snipgate.core",
    "snipgate.observability",
    "snipgate.cli",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_exports(name):
    module = importlib.import_module(name)
    for attr in getattr(module, "__all__", []):
        assert hasattr(module, attr), f"{name}.{attr} missing"


def test_services_wire_together(tmp_path):
    from snipgate.core import SnippetServices
    from snipgate.utils import SnipgateConfig

    config = SnipgateConfig()
    config.store.persist_path = ""
    services = SnippetServices(config)
    assert services.gateway.store is services.store
    assert services.editor.executor is services.executor
