"""Configuration management with validation.

Constraints are enforced at configuration load time so a run never starts
with a half-valid configuration.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 10
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

DEFAULT_CREATE_TIMEOUT_SECONDS = 300
DEFAULT_DELETE_TIMEOUT_SECONDS = 300
DEFAULT_FIREWALL_DELETE_TIMEOUT_SECONDS = 1200
MAX_TASK_TIMEOUT_SECONDS = 3600

DEFAULT_WAITER_PERIOD_SECONDS = 5

DEFAULT_INFRA_CONFIG_PATH = "/config/infrastructure.yaml"
DEFAULT_STATE_PATH = "/state/infrastructure-state.json"

MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max infrastructure config
MAX_STATE_FILE_SIZE_BYTES = 4 * 1024 * 1024

# Input validation patterns
VALID_CLUSTER_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,61}[a-z0-9]$"
VALID_PROJECT_ID_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+[0-9]+$"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    project_id: str
    region: str
    cluster_name: str

    # Paths
    infra_config_path: Path = field(
        default_factory=lambda: Path(DEFAULT_INFRA_CONFIG_PATH)
    )
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))
    credentials_file: Path | None = None

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    create_timeout_seconds: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    delete_timeout_seconds: int = DEFAULT_DELETE_TIMEOUT_SECONDS
    firewall_delete_timeout_seconds: int = DEFAULT_FIREWALL_DELETE_TIMEOUT_SECONDS
    waiter_period_seconds: int = DEFAULT_WAITER_PERIOD_SECONDS

    # Behavior
    create_service_account: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project_id:
            errors.append("GCP_PROJECT_ID is required")
        elif not re.match(VALID_PROJECT_ID_PATTERN, self.project_id):
            errors.append(f"GCP_PROJECT_ID must be a valid project id: {self.project_id}")

        if not self.region:
            errors.append("GCP_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"GCP_REGION must be a valid region: {self.region}")

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.cluster_name}"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        for name, value in (
            ("CREATE_TIMEOUT", self.create_timeout_seconds),
            ("DELETE_TIMEOUT", self.delete_timeout_seconds),
            ("FIREWALL_DELETE_TIMEOUT", self.firewall_delete_timeout_seconds),
        ):
            if not (0 < value <= MAX_TASK_TIMEOUT_SECONDS):
                errors.append(f"{name} must be between 1 and {MAX_TASK_TIMEOUT_SECONDS} seconds")

        if self.waiter_period_seconds < 1:
            errors.append("WAITER_PERIOD must be at least 1 second")

        if self.credentials_file is not None and not self.credentials_file.exists():
            errors.append(f"Credentials file does not exist: {self.credentials_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GCP_PROJECT_ID: Project that owns the infrastructure
            GCP_REGION: Region for subnets, router and NAT
            CLUSTER_NAME: Cluster name, used as prefix for all resource names
            INFRA_CONFIG_PATH: Infrastructure config YAML (default: /config/infrastructure.yaml)
            STATE_PATH: Status and persisted state JSON (default: /state/infrastructure-state.json)
            GOOGLE_APPLICATION_CREDENTIALS: Service account key file (default: ADC)
            POLL_INTERVAL: Seconds between operation polls (default: 10)
            CREATE_TIMEOUT: Timeout for each ensure task in seconds (default: 300)
            DELETE_TIMEOUT: Timeout for each destroy task in seconds (default: 300)
            FIREWALL_DELETE_TIMEOUT: Timeout for firewall cleanup in seconds (default: 1200)
            WAITER_PERIOD: Seconds between "still waiting" log lines (default: 5)
            DISABLE_SERVICE_ACCOUNT_CREATION: Skip the service account task (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        credentials = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")

        return cls(
            project_id=os.environ.get("GCP_PROJECT_ID", ""),
            region=os.environ.get("GCP_REGION", ""),
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            infra_config_path=Path(
                os.environ.get("INFRA_CONFIG_PATH", DEFAULT_INFRA_CONFIG_PATH)
            ),
            state_path=Path(os.environ.get("STATE_PATH", DEFAULT_STATE_PATH)),
            credentials_file=Path(credentials) if credentials else None,
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            create_timeout_seconds=get_int("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            delete_timeout_seconds=get_int("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            firewall_delete_timeout_seconds=get_int(
                "FIREWALL_DELETE_TIMEOUT", DEFAULT_FIREWALL_DELETE_TIMEOUT_SECONDS
            ),
            waiter_period_seconds=get_int("WAITER_PERIOD", DEFAULT_WAITER_PERIOD_SECONDS),
            create_service_account=not get_bool("DISABLE_SERVICE_ACCOUNT_CREATION", False),
        )
