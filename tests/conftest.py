"""
Pytest configuration and shared fixtures.
"""

from tests.fixtures.orchestrator_fixtures import (
    base_image,
    hypervisor,
    lab,
    notifications,
    orchestrator,
    orchestrator_factory,
    probe,
    remote_shell,
    settings,
)

__all__ = [
    "base_image",
    "hypervisor",
    "lab",
    "notifications",
    "orchestrator",
    "orchestrator_factory",
    "probe",
    "remote_shell",
    "settings",
]


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
