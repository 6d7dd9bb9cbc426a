"""Shared fixtures for relay agent tests."""

from unittest.mock import AsyncMock

import pytest

from relay_agent.dispatch_gate import DispatchGate
from relay_agent.models import RelaySession


@pytest.fixture
def session():
    return RelaySession(cursor=0)


@pytest.fixture
def submitter():
    mock = AsyncMock()
    mock.submit = AsyncMock(return_value="0x" + "12" * 32)
    return mock


@pytest.fixture
def gate(session, submitter):
    return DispatchGate(session=session, submitter=submitter)
