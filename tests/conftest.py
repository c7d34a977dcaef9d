"""Shared fixtures for the courier test suite."""

from __future__ import annotations

import pytest

from courier.crypto import KeyRing
from tests._doubles import FrozenClock


@pytest.fixture
def key_ring() -> KeyRing:
    return KeyRing(
        default="default-master-secret",
        tokens="token-master-secret",
        pii="pii-master-secret",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()
