"""Tests for the infraflow CLI."""

import json
from pathlib import Path

from click.testing import CliRunner

from infraflow.cli import cli
from infraflow.config import Config
from infraflow.state import FLOW_STATE_API_VERSION, FLOW_STATE_KIND

VALID = """\
networks:
  workers: 10.250.0.0/16
networking:
  nodes: 10.250.0.0/16
"""


def write(path: Path, content: str) -> Path:
    path.write_text(content)
    return path


class TestValidate:
    """Tests for the validate command."""

    def test_valid_config(self, tmp_path: Path) -> None:
        path = write(tmp_path / "infra.yaml", VALID)

        result = CliRunner().invoke(cli, ["validate", str(path)])

        assert result.exit_code == 0
        assert "is valid" in result.output

    def test_invalid_config(self, tmp_path: Path) -> None:
        path = write(tmp_path / "infra.yaml", "networks:\n  workers: 10.0.0.0/16\nnetworking:\n  nodes: 10.250.0.0/16\n")

        result = CliRunner().invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "networks.workers" in result.output

    def test_update_shrinking_workers(self, tmp_path: Path) -> None:
        previous = write(tmp_path / "previous.yaml", VALID)
        current = write(
            tmp_path / "infra.yaml",
            "networks:\n  workers: 10.250.0.0/17\nnetworking:\n  nodes: 10.250.0.0/16\n",
        )

        result = CliRunner().invoke(cli, ["validate", str(current), "--previous", str(previous)])

        assert result.exit_code == 1
        assert "can only be expanded" in result.output


class TestStateShow:
    """Tests for the state show command."""

    def test_prints_document(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(
            json.dumps(
                {
                    "status": {"egressCIDRs": []},
                    "state": {
                        "kind": FLOW_STATE_KIND,
                        "apiVersion": FLOW_STATE_API_VERSION,
                        "data": {"resources_exist": "true"},
                    },
                }
            )
        )

        result = CliRunner().invoke(cli, ["state", "show", "--state", str(path)])

        assert result.exit_code == 0
        doc = json.loads(result.output)
        assert doc["status"] == {"egressCIDRs": []}
        assert doc["resourcesExist"] is True
        assert doc["state"]["data"] == {"resources_exist": "true"}

    def test_foreign_state(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"state": {"kind": "Legacy"}}))

        result = CliRunner().invoke(cli, ["state", "show", "--state", str(path)])

        doc = json.loads(result.output)
        assert doc["state"] is None
        assert doc["resourcesExist"] is False

    def test_default_path_is_the_engine_default(self) -> None:
        show = cli.commands["state"].commands["show"]
        option = next(p for p in show.params if p.name == "state_path")
        config = Config(project_id="test-project", region="europe-west1", cluster_name="shoot--dev--test")

        assert Path(option.default) == config.state_path

    def test_state_path_from_environment(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"status": {"egressCIDRs": ["1.2.3.4/32"]}}))

        result = CliRunner().invoke(cli, ["state", "show"], env={"STATE_PATH": str(path)})

        assert result.exit_code == 0
        assert json.loads(result.output)["status"] == {"egressCIDRs": ["1.2.3.4/32"]}

    def test_unreadable_state(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("[]")

        result = CliRunner().invoke(cli, ["state", "show", "--state", str(path)])

        assert result.exit_code == 1
        assert "JSON object" in result.output
