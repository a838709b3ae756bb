"""Infrastructure config file loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary: a loaded config has passed both the pydantic schema and the
semantic checks of validate_infrastructure_config.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .errors import InfraflowError
from .models import InfrastructureConfig, validate_infrastructure_config

logger = logging.getLogger(__name__)


class SpecLoadError(InfraflowError):
    """Raised when config loading or validation fails."""

    pass


def _read_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SpecLoadError(f"Config file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat config file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read config file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Config file must contain a YAML mapping: {path}")

    # Flat format or a kubernetes-style apiVersion/kind/spec wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        return spec_data
    return raw_data


def parse_infrastructure(data: dict[str, Any], source: str = "<input>") -> InfrastructureConfig:
    """Validate an already parsed mapping.

    Raises:
        SpecLoadError: If the schema or the semantic checks fail.
    """
    try:
        infra = InfrastructureConfig.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e

    problems = validate_infrastructure_config(infra)
    if problems:
        error_list = "\n".join(f"  - {p}" for p in problems)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}")
    return infra


def load_infrastructure(path: Path) -> InfrastructureConfig:
    """Load and validate the infrastructure config from YAML.

    Args:
        path: Config file, either flat or wrapped in apiVersion/kind/spec.

    Returns:
        Validated infrastructure config.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    path = Path(path)
    infra = parse_infrastructure(_read_mapping(path), str(path))
    logger.info("Loaded infrastructure config", extra={"path": str(path)})
    return infra
