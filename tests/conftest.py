"""Pytest configuration, Hypothesis profiles and shared transports."""

import pytest
from fakes import FakeTransport
from hypothesis import settings

from leasekeeper.transports.memory import InMemoryTransport

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

MEMORY_QUEUE = "memory://orders"


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Scripted transport with an empty script."""
    return FakeTransport()


@pytest.fixture
def memory_transport() -> InMemoryTransport:
    """In-memory transport with MEMORY_QUEUE already created."""
    transport = InMemoryTransport(default_visibility_timeout=30)
    transport.create_queue(MEMORY_QUEUE)
    return transport
