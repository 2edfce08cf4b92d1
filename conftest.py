"""
Pytest configuration for the coprocessor test suite.

    python -m pytest                 # everything
    python -m pytest -m "not slow"   # skip the reference-pairing checks
"""

import logging

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: full BLS12-381 pairing evaluations (several seconds each)")


@pytest.fixture(autouse=True)
def _quiet_cycle_logs(caplog):
    # dispatch logs every decode at DEBUG; keep captured output readable
    caplog.set_level(logging.INFO)
