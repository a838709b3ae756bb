"""Pydantic models for the infrastructure config and status.

These models provide:
1. Type-safe YAML parsing of the infrastructure config
2. Semantic validation (CIDRs, VPC/cloud router rules, flow logs)
3. Update validation between an applied and a new config
4. The status written back after a successful reconcile
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

AGGREGATION_INTERVALS = (
    "INTERVAL_5_SEC",
    "INTERVAL_30_SEC",
    "INTERVAL_1_MIN",
    "INTERVAL_5_MIN",
    "INTERVAL_15_MIN",
)
FLOW_LOG_METADATA = ("INCLUDE_ALL_METADATA",)

PURPOSE_NODES = "nodes"
PURPOSE_INTERNAL = "internal"


# =============================================================================
# Infrastructure config
# =============================================================================


class CloudRouter(BaseModel):
    """User-managed Cloud Router reference."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""


class VPC(BaseModel):
    """User-managed VPC reference."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""
    cloud_router: CloudRouter | None = Field(None, alias="cloudRouter")


class EndpointIndependentMapping(BaseModel):
    model_config = {"extra": "ignore"}

    enabled: bool = False


class NatIPName(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63)]


class CloudNAT(BaseModel):
    """Cloud NAT settings. Unset values use the NAT defaults."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    min_ports_per_vm: int | None = Field(None, alias="minPortsPerVM", ge=0)
    max_ports_per_vm: int | None = Field(None, alias="maxPortsPerVM", ge=0)
    enable_dynamic_port_allocation: bool = Field(False, alias="enableDynamicPortAllocation")
    endpoint_independent_mapping: EndpointIndependentMapping | None = Field(
        None, alias="endpointIndependentMapping"
    )
    nat_ip_names: list[NatIPName] = Field(default_factory=list, alias="natIPNames")
    icmp_idle_timeout_sec: int | None = Field(None, alias="icmpIdleTimeoutSec", ge=0)
    tcp_established_idle_timeout_sec: int | None = Field(
        None, alias="tcpEstablishedIdleTimeoutSec", ge=0
    )
    tcp_time_wait_timeout_sec: int | None = Field(None, alias="tcpTimeWaitTimeoutSec", ge=0)
    tcp_transitory_idle_timeout_sec: int | None = Field(
        None, alias="tcpTransitoryIdleTimeoutSec", ge=0
    )
    udp_idle_timeout_sec: int | None = Field(None, alias="udpIdleTimeoutSec", ge=0)


class FlowLogs(BaseModel):
    """VPC flow log settings for the worker subnet."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    aggregation_interval: str | None = Field(None, alias="aggregationInterval")
    flow_sampling: float | None = Field(None, alias="flowSampling")
    metadata: str | None = None


class NetworkConfig(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    vpc: VPC | None = None
    cloud_nat: CloudNAT | None = Field(None, alias="cloudNAT")
    internal: str | None = None
    # Deprecated, use workers
    worker: str = ""
    workers: str = ""
    flow_logs: FlowLogs | None = Field(None, alias="flowLogs")


class Networking(BaseModel):
    """Cluster networking ranges."""

    model_config = {"extra": "ignore"}

    nodes: str | None = None
    pods: str | None = None
    services: str | None = None


class InfrastructureConfig(BaseModel):
    """Desired infrastructure of one cluster.

    Example YAML:
        networks:
          workers: 10.250.0.0/16
          internal: 10.251.0.0/16
          cloudNAT:
            minPortsPerVM: 4096
        networking:
          nodes: 10.250.0.0/16
          pods: 100.96.0.0/11
          services: 100.64.0.0/13
    """

    model_config = {"extra": "ignore"}

    networks: NetworkConfig = Field(default_factory=NetworkConfig)
    networking: Networking = Field(default_factory=Networking)

    @property
    def worker_cidr(self) -> str:
        return self.networks.workers or self.networks.worker

    @property
    def is_user_vpc(self) -> bool:
        return self.networks.vpc is not None and bool(self.networks.vpc.name)

    @property
    def is_user_router(self) -> bool:
        vpc = self.networks.vpc
        return vpc is not None and vpc.cloud_router is not None and bool(vpc.cloud_router.name)

    @property
    def nat_ip_names(self) -> list[str]:
        if self.networks.cloud_nat is None:
            return []
        return [n.name for n in self.networks.cloud_nat.nat_ip_names]


# =============================================================================
# Validation
# =============================================================================


@dataclass(frozen=True)
class FieldError:
    """A single validation problem at a config path."""

    path: str
    detail: str

    def __str__(self) -> str:
        return f"{self.path}: {self.detail}"


def _parse_cidr(path: str, value: str, errs: list[FieldError]) -> Any:
    try:
        network = ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        errs.append(FieldError(path, f"invalid CIDR {value!r}: {e}"))
        return None
    if str(network) != value:
        errs.append(FieldError(path, f"must be valid canonical CIDR, expected {network}"))
    return network


def _overlaps(a: Any, b: Any) -> bool:
    return a is not None and b is not None and a.version == b.version and a.overlaps(b)


def validate_infrastructure_config(infra: InfrastructureConfig) -> list[FieldError]:
    """Validate an infrastructure config against the cluster networking.

    Returns:
        All problems found; empty when the config is valid.
    """
    errs: list[FieldError] = []
    networks = infra.networks

    cluster: dict[str, Any] = {}
    for name in ("nodes", "pods", "services"):
        value = getattr(infra.networking, name)
        if value:
            cluster[name] = _parse_cidr(f"networking.{name}", value, errs)

    worker_net = None
    if not networks.worker and not networks.workers:
        errs.append(
            FieldError("networks.workers", "must specify the network range for the worker network")
        )
    if networks.worker:
        worker_net = _parse_cidr("networks.worker", networks.worker, errs)
    if networks.workers:
        worker_net = _parse_cidr("networks.workers", networks.workers, errs)

    if networks.internal is not None:
        internal_net = _parse_cidr("networks.internal", networks.internal, errs)
        for name, net in cluster.items():
            if _overlaps(net, internal_net):
                errs.append(
                    FieldError("networks.internal", f"must not overlap with networking.{name}")
                )
        if _overlaps(worker_net, internal_net):
            errs.append(FieldError("networks.internal", "must not overlap with networks.workers"))

    nodes_net = cluster.get("nodes")
    if nodes_net is not None and worker_net is not None:
        if nodes_net.version != worker_net.version or not worker_net.subnet_of(nodes_net):
            errs.append(FieldError("networks.workers", "must be a subset of networking.nodes"))

    vpc = networks.vpc
    if vpc is not None:
        if not vpc.name:
            errs.append(
                FieldError("networks.vpc.name", "vpc name must not be empty when vpc key is provided")
            )
            if vpc.cloud_router is not None:
                errs.append(
                    FieldError(
                        "networks.vpc.cloudRouter",
                        "cloud router can not be configured when the VPC name is not specified",
                    )
                )
        elif vpc.cloud_router is None:
            errs.append(
                FieldError("networks.vpc.cloudRouter", "cloud router must be defined when reusing a VPC")
            )
        elif not vpc.cloud_router.name:
            errs.append(
                FieldError(
                    "networks.vpc.cloudRouter.name",
                    "cloud router name must be specified when reusing a VPC",
                )
            )

    flow_logs = networks.flow_logs
    if flow_logs is not None:
        if (
            flow_logs.aggregation_interval is None
            and flow_logs.flow_sampling is None
            and flow_logs.metadata is None
        ):
            errs.append(
                FieldError(
                    "networks.flowLogs",
                    "at least one VPC flow log parameter must be specified when VPC flow log section is provided",
                )
            )
        if (
            flow_logs.aggregation_interval is not None
            and flow_logs.aggregation_interval not in AGGREGATION_INTERVALS
        ):
            errs.append(
                FieldError(
                    "networks.flowLogs.aggregationInterval",
                    f"unsupported value {flow_logs.aggregation_interval!r}, "
                    f"supported values: {list(AGGREGATION_INTERVALS)}",
                )
            )
        if flow_logs.metadata is not None and flow_logs.metadata not in FLOW_LOG_METADATA:
            errs.append(
                FieldError(
                    "networks.flowLogs.metadata",
                    f"unsupported value {flow_logs.metadata!r}, "
                    f"supported values: {list(FLOW_LOG_METADATA)}",
                )
            )
        if flow_logs.flow_sampling is not None and not (0 <= flow_logs.flow_sampling <= 1):
            errs.append(FieldError("networks.flowLogs.flowSampling", "must contain a valid value"))

    return errs


def validate_infrastructure_config_update(
    old: InfrastructureConfig, new: InfrastructureConfig
) -> list[FieldError]:
    """Validate a config change against the previously applied config.

    VPC, cloud router and internal range are immutable. The worker range may
    only be expanded: the new range must contain the old one.
    """
    errs: list[FieldError] = []
    old_vpc = old.networks.vpc
    new_vpc = new.networks.vpc

    if old_vpc is not None and new_vpc is None:
        errs.append(FieldError("networks.vpc", "field is immutable"))
    if old_vpc is not None and new_vpc is not None:
        if old_vpc.name != new_vpc.name:
            errs.append(FieldError("networks.vpc.name", "field is immutable"))
        if old_vpc.cloud_router != new_vpc.cloud_router:
            errs.append(FieldError("networks.vpc.cloudRouter", "field is immutable"))

    if old.networks.internal != new.networks.internal:
        errs.append(FieldError("networks.internal", "field is immutable"))

    old_workers, new_workers = old.worker_cidr, new.worker_cidr
    if old_workers and new_workers and old_workers != new_workers:
        try:
            old_net = ipaddress.ip_network(old_workers, strict=False)
            new_net = ipaddress.ip_network(new_workers, strict=False)
        except ValueError as e:
            errs.append(FieldError("networks.workers", f"invalid CIDR: {e}"))
        else:
            if old_net.version != new_net.version or not old_net.subnet_of(new_net):
                errs.append(
                    FieldError(
                        "networks.workers",
                        f"worker range can only be expanded, {new_workers} does not contain {old_workers}",
                    )
                )

    return errs


# =============================================================================
# Status
# =============================================================================


class SubnetStatus(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    purpose: str

    @field_validator("purpose")
    @classmethod
    def validate_purpose(cls, v: str) -> str:
        if v not in (PURPOSE_NODES, PURPOSE_INTERNAL):
            raise ValueError(f"purpose must be one of {[PURPOSE_NODES, PURPOSE_INTERNAL]}")
        return v


class NatIPStatus(BaseModel):
    model_config = {"extra": "ignore"}

    ip: str


class NetworkStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    vpc: VPC = Field(default_factory=VPC)
    subnets: list[SubnetStatus] = Field(default_factory=list)
    nat_ips: list[NatIPStatus] = Field(default_factory=list, alias="natIPs")


class NetworkingStatus(BaseModel):
    model_config = {"extra": "ignore"}

    nodes: list[str] = Field(default_factory=list)
    pods: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)


class InfrastructureStatus(BaseModel):
    """Status written after a successful reconcile."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    networks: NetworkStatus = Field(default_factory=NetworkStatus)
    service_account_email: str = Field("", alias="serviceAccountEmail")
    egress_cidrs: list[str] = Field(default_factory=list, alias="egressCIDRs")
    networking: NetworkingStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
