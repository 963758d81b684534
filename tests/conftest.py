"""
Pytest configuration for component analytics tests.
"""

import os


def pytest_configure(config):
    """
    Clear ANALYTICS_* overrides before any test modules are imported.
    Tests build their configuration explicitly.
    """
    for name in list(os.environ):
        if name.startswith("ANALYTICS_"):
            del os.environ[name]
