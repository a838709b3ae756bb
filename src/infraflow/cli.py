"""infraflow CLI.

Usage:
    infraflow reconcile                     # Converge the cluster infrastructure
    infraflow delete                        # Tear it down
    infraflow state show                    # Print persisted status and state
    infraflow validate CONFIG [--previous]  # Check a config file, optionally as an update
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from .config import DEFAULT_STATE_PATH
from .ensure import KEY_RESOURCES_EXIST
from .main import main as run_operation
from .main import setup_logging
from .models import validate_infrastructure_config_update
from .spec_loader import SpecLoadError, load_infrastructure
from .state import FileStateStore, FlowState, StateStoreError


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="infraflow")
def cli() -> None:
    """infraflow: GCP network and identity reconciliation for one cluster.

    \b
    Cluster and project come from the environment:
        GCP_PROJECT_ID, GCP_REGION, CLUSTER_NAME
    """
    pass


def _config_option(fn):  # type: ignore[no-untyped-def]
    return click.option(
        "--config",
        "config_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        envvar="INFRA_CONFIG_PATH",
        help="Infrastructure config YAML",
    )(fn)


def _state_option(fn):  # type: ignore[no-untyped-def]
    return click.option(
        "--state",
        "state_path",
        type=click.Path(dir_okay=False, path_type=Path),
        envvar="STATE_PATH",
        help="Status and state JSON document",
    )(fn)


# =============================================================================
# Operations
# =============================================================================


@cli.command()
@_config_option
@_state_option
def reconcile(config_path: Path | None, state_path: Path | None) -> None:
    """Create or update the cluster infrastructure."""
    setup_logging()
    code = asyncio.run(
        run_operation("reconcile", infra_config_path=config_path, state_path=state_path)
    )
    sys.exit(code)


@cli.command()
@_config_option
@_state_option
def delete(config_path: Path | None, state_path: Path | None) -> None:
    """Delete the cluster infrastructure recorded in the persisted state."""
    setup_logging()
    code = asyncio.run(
        run_operation("delete", infra_config_path=config_path, state_path=state_path)
    )
    sys.exit(code)


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect the persisted status and state."""
    pass


@state.command("show")
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="STATE_PATH",
    default=DEFAULT_STATE_PATH,
    help="Status and state JSON document",
)
def state_show(state_path: Path) -> None:
    """Print the persisted document as JSON."""
    store = FileStateStore(state_path)
    try:
        stored = asyncio.run(store.load())
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    flow_state = FlowState.from_payload(stored.state)
    doc = {
        "status": stored.status,
        "state": flow_state.to_payload() if flow_state is not None else None,
        "resourcesExist": bool(
            flow_state is not None
            and (flow_state.data.get(KEY_RESOURCES_EXIST) or "").lower() == "true"
        ),
    }
    click.echo(json.dumps(doc, indent=2, sort_keys=True))


# =============================================================================
# Validation
# =============================================================================


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--previous",
    "previous_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Previously applied config; checks the change is allowed",
)
def validate(config_path: Path, previous_path: Path | None) -> None:
    """Validate an infrastructure config file."""
    try:
        infra = load_infrastructure(config_path)
        previous = load_infrastructure(previous_path) if previous_path else None
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    if previous is not None:
        problems = validate_infrastructure_config_update(previous, infra)
        if problems:
            for problem in problems:
                click.secho(f"  - {problem}", fg="red", err=True)
            raise click.ClickException(f"{len(problems)} invalid change(s) in {config_path}")

    click.secho(f"✓ {config_path} is valid", fg="green")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
