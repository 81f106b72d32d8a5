"""Test doubles for taskloom."""

from tests.mocks.fake_agents import FakeLauncher, FakeProcessControl

__all__ = [
    "FakeLauncher",
    "FakeProcessControl",
]
