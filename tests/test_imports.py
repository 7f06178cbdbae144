"""
Smoke test that every module imports.
"""
import importlib

import pytest

MODULES = [
    "usage_dashboard.cli.main",
    "usage_dashboard.config.loader",
    "usage_dashboard.core.aggregation",
    "usage_dashboard.core.cache",
    "usage_dashboard.core.errors",
    "usage_dashboard.core.executor",
    "usage_dashboard.core.pricing",
    "usage_dashboard.core.service",
    "usage_dashboard.core.token_counter",
    "usage_dashboard.core.views",
    "usage_dashboard.storage.models",
    "usage_dashboard.storage.parsers",
    "usage_dashboard.storage.repository",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    assert importlib.import_module(name) is not None
