"""Tests for the Pydantic models and config validation."""

from typing import Any

import pytest
from pydantic import ValidationError

from infraflow.models import (
    PURPOSE_NODES,
    InfrastructureConfig,
    InfrastructureStatus,
    NatIPStatus,
    NetworkStatus,
    SubnetStatus,
    validate_infrastructure_config,
    validate_infrastructure_config_update,
)


def make(networks: dict[str, Any], networking: dict[str, Any] | None = None) -> InfrastructureConfig:
    return InfrastructureConfig.model_validate(
        {
            "networks": networks,
            "networking": networking
            if networking is not None
            else {"nodes": "10.250.0.0/16", "pods": "100.96.0.0/11", "services": "100.64.0.0/13"},
        }
    )


def paths(infra: InfrastructureConfig) -> list[str]:
    return [e.path for e in validate_infrastructure_config(infra)]


class TestInfrastructureConfig:
    """Tests for InfrastructureConfig parsing."""

    def test_valid_config(self) -> None:
        """Test parsing a config with every section."""
        infra = make(
            {
                "workers": "10.250.0.0/16",
                "internal": "10.251.0.0/16",
                "vpc": {"name": "shared", "cloudRouter": {"name": "shared-router"}},
                "cloudNAT": {
                    "minPortsPerVM": 4096,
                    "enableDynamicPortAllocation": True,
                    "endpointIndependentMapping": {"enabled": True},
                    "natIPNames": [{"name": "ip-1"}],
                },
                "flowLogs": {"aggregationInterval": "INTERVAL_5_SEC", "flowSampling": 0.5},
            }
        )

        assert infra.worker_cidr == "10.250.0.0/16"
        assert infra.is_user_vpc
        assert infra.is_user_router
        assert infra.nat_ip_names == ["ip-1"]
        assert infra.networks.cloud_nat is not None
        assert infra.networks.cloud_nat.min_ports_per_vm == 4096
        assert validate_infrastructure_config(infra) == []

    def test_deprecated_worker_field(self) -> None:
        infra = make({"worker": "10.250.0.0/16"})

        assert infra.worker_cidr == "10.250.0.0/16"
        assert validate_infrastructure_config(infra) == []

    def test_negative_ports_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            make({"workers": "10.250.0.0/16", "cloudNAT": {"minPortsPerVM": -1}})

        assert "minPortsPerVM" in str(exc_info.value)

    def test_unknown_fields_ignored(self) -> None:
        infra = make({"workers": "10.250.0.0/16", "somethingNew": True})

        assert validate_infrastructure_config(infra) == []


class TestValidateInfrastructureConfig:
    """Tests for validate_infrastructure_config."""

    def test_workers_required(self) -> None:
        assert paths(make({})) == ["networks.workers"]

    def test_non_canonical_cidr(self) -> None:
        errs = validate_infrastructure_config(make({"workers": "10.250.0.1/16"}))

        assert [e.path for e in errs] == ["networks.workers"]
        assert "10.250.0.0/16" in errs[0].detail

    def test_invalid_cidr(self) -> None:
        assert "networks.workers" in paths(make({"workers": "not-a-cidr"}))

    def test_workers_must_be_inside_nodes(self) -> None:
        assert paths(make({"workers": "10.0.0.0/16"})) == ["networks.workers"]

    def test_internal_overlap(self) -> None:
        errs = validate_infrastructure_config(
            make({"workers": "10.250.0.0/16", "internal": "100.96.0.0/16"})
        )

        assert [e.path for e in errs] == ["networks.internal"]
        assert "networking.pods" in errs[0].detail

    def test_internal_overlaps_workers(self) -> None:
        infra = make({"workers": "10.250.0.0/16", "internal": "10.250.128.0/17"})

        details = [str(e) for e in validate_infrastructure_config(infra)]

        assert "networks.internal: must not overlap with networks.workers" in details

    @pytest.mark.parametrize(
        ("vpc", "expected"),
        [
            ({"name": ""}, ["networks.vpc.name"]),
            ({"name": "", "cloudRouter": {"name": "r"}}, ["networks.vpc.name", "networks.vpc.cloudRouter"]),
            ({"name": "shared"}, ["networks.vpc.cloudRouter"]),
            ({"name": "shared", "cloudRouter": {"name": ""}}, ["networks.vpc.cloudRouter.name"]),
        ],
    )
    def test_vpc_rules(self, vpc: dict[str, Any], expected: list[str]) -> None:
        assert paths(make({"workers": "10.250.0.0/16", "vpc": vpc})) == expected

    @pytest.mark.parametrize(
        ("flow_logs", "expected"),
        [
            ({}, "networks.flowLogs"),
            ({"aggregationInterval": "INTERVAL_2_MIN"}, "networks.flowLogs.aggregationInterval"),
            ({"metadata": "EXCLUDE_ALL_METADATA"}, "networks.flowLogs.metadata"),
            ({"flowSampling": 1.5}, "networks.flowLogs.flowSampling"),
        ],
    )
    def test_flow_logs_rules(self, flow_logs: dict[str, Any], expected: str) -> None:
        assert paths(make({"workers": "10.250.0.0/16", "flowLogs": flow_logs})) == [expected]

    def test_errors_are_collected(self) -> None:
        """Test that all problems are reported together."""
        infra = make(
            {
                "workers": "10.0.0.0/16",
                "vpc": {"name": "shared"},
                "flowLogs": {"flowSampling": 2},
            }
        )

        assert paths(infra) == [
            "networks.workers",
            "networks.vpc.cloudRouter",
            "networks.flowLogs.flowSampling",
        ]


class TestValidateInfrastructureConfigUpdate:
    """Tests for validate_infrastructure_config_update."""

    def test_unchanged(self) -> None:
        infra = make({"workers": "10.250.0.0/16"})

        assert validate_infrastructure_config_update(infra, infra.model_copy(deep=True)) == []

    def test_worker_range_expansion_allowed(self) -> None:
        old = make({"workers": "10.250.0.0/16"})
        new = make({"workers": "10.250.0.0/15"})

        assert validate_infrastructure_config_update(old, new) == []

    @pytest.mark.parametrize("workers", ["10.250.0.0/17", "10.0.0.0/16"])
    def test_worker_range_cannot_shrink_or_move(self, workers: str) -> None:
        old = make({"workers": "10.250.0.0/16"})
        new = make({"workers": workers})

        errs = validate_infrastructure_config_update(old, new)

        assert [e.path for e in errs] == ["networks.workers"]
        assert "can only be expanded" in errs[0].detail

    def test_internal_is_immutable(self) -> None:
        old = make({"workers": "10.250.0.0/16", "internal": "10.251.0.0/16"})
        new = make({"workers": "10.250.0.0/16"})

        assert [e.path for e in validate_infrastructure_config_update(old, new)] == [
            "networks.internal"
        ]

    def test_vpc_is_immutable(self) -> None:
        old = make(
            {"workers": "10.250.0.0/16", "vpc": {"name": "a", "cloudRouter": {"name": "r"}}}
        )

        removed = validate_infrastructure_config_update(old, make({"workers": "10.250.0.0/16"}))
        renamed = validate_infrastructure_config_update(
            old, make({"workers": "10.250.0.0/16", "vpc": {"name": "b", "cloudRouter": {"name": "r2"}}})
        )

        assert [e.path for e in removed] == ["networks.vpc"]
        assert [e.path for e in renamed] == ["networks.vpc.name", "networks.vpc.cloudRouter"]


class TestInfrastructureStatus:
    """Tests for status serialization."""

    def test_to_dict_uses_wire_names(self) -> None:
        status = InfrastructureStatus(
            networks=NetworkStatus(
                subnets=[SubnetStatus(name="nodes", purpose=PURPOSE_NODES)],
                nat_ips=[NatIPStatus(ip="34.1.2.3")],
            ),
            service_account_email="sa@example.com",
            egress_cidrs=["34.1.2.3/32"],
        )

        out = status.to_dict()

        assert out["networks"]["natIPs"] == [{"ip": "34.1.2.3"}]
        assert out["networks"]["vpc"] == {"name": ""}
        assert out["serviceAccountEmail"] == "sa@example.com"
        assert out["egressCIDRs"] == ["34.1.2.3/32"]
        assert "networking" not in out

    def test_unknown_subnet_purpose(self) -> None:
        with pytest.raises(ValidationError):
            SubnetStatus(name="x", purpose="public")
