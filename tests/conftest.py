"""
Shared fixtures for the argmin protocol tests
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).parent))

from argmin_he.core.artifact_store import MemoryArtifactStore
from argmin_he.core.parameters import ParameterSet, ProtocolConfig
from argmin_he.core.security_logger import SecurityLogger
from fakes import PlaintextSession


@pytest.fixture
def params():
    return ParameterSet()


@pytest.fixture
def config():
    return ProtocolConfig()


@pytest.fixture
def store(config):
    return MemoryArtifactStore(names=config.names)


@pytest.fixture
def security_logger():
    return SecurityLogger()


@pytest.fixture
def publisher_session():
    return PlaintextSession()


@pytest.fixture
def worker_session():
    return PlaintextSession()
