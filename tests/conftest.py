"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gcp_mock import MemoryStateStore, MockComputeClient, MockIAMClient  # noqa: E402
from infraflow.config import Config  # noqa: E402
from infraflow.models import InfrastructureConfig  # noqa: E402

CLUSTER_NAME = "shoot--dev--test"
REGION = "europe-west1"
PROJECT_ID = "test-project"


@pytest.fixture
def config() -> Config:
    return Config(project_id=PROJECT_ID, region=REGION, cluster_name=CLUSTER_NAME)


@pytest.fixture
def infra() -> InfrastructureConfig:
    return InfrastructureConfig.model_validate(
        {
            "networks": {"workers": "10.250.0.0/16", "internal": "10.251.0.0/16"},
            "networking": {
                "nodes": "10.250.0.0/16",
                "pods": "100.96.0.0/11",
                "services": "100.64.0.0/13",
            },
        }
    )


@pytest.fixture
def compute() -> MockComputeClient:
    return MockComputeClient()


@pytest.fixture
def iam() -> MockIAMClient:
    return MockIAMClient(PROJECT_ID)


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()
