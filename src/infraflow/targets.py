"""Resource names and desired-state descriptors derived from the config."""

from __future__ import annotations

from .models import CloudNAT, FlowLogs, InfrastructureConfig
from .resources import (
    Firewall,
    FirewallRule,
    Network,
    NetworkRoutingConfig,
    Router,
    RouterNat,
    RouterNatLogConfig,
    RouterNatSubnetworkToNat,
    Subnetwork,
    SubnetworkLogConfig,
)

DEFAULT_VPC_ROUTING_MODE = "REGIONAL"
DEFAULT_AGGREGATION_INTERVAL = "INTERVAL_5_MIN"
DEFAULT_FLOW_SAMPLING = 0.5
DEFAULT_FLOW_LOG_METADATA = "EXCLUDE_ALL_METADATA"

DEFAULT_NAT_MIN_PORTS_PER_VM = 2048
DEFAULT_NAT_MAX_PORTS_PER_VM = 65536
DEFAULT_NAT_ICMP_IDLE_TIMEOUT_SEC = 30
DEFAULT_NAT_TCP_ESTABLISHED_IDLE_TIMEOUT_SEC = 1200
DEFAULT_NAT_TCP_TIME_WAIT_TIMEOUT_SEC = 120
DEFAULT_NAT_TCP_TRANSITORY_IDLE_TIMEOUT_SEC = 30
DEFAULT_NAT_UDP_IDLE_TIMEOUT_SEC = 30

DEFAULT_FIREWALL_PRIORITY = 1000

HEALTH_CHECK_SOURCE_RANGES = (
    "35.191.0.0/16",
    "209.85.204.0/22",
    "209.85.152.0/22",
    "130.211.0.0/22",
)
NODE_PORT_RANGE = "30000-32767"


# =============================================================================
# Names
# =============================================================================


def service_account_name(cluster: str) -> str:
    return cluster


def vpc_name(cluster: str, infra: InfrastructureConfig) -> str:
    if infra.networks.vpc is not None and infra.networks.vpc.name:
        return infra.networks.vpc.name
    return cluster


def subnet_name(cluster: str) -> str:
    return f"{cluster}-nodes"


def internal_subnet_name(cluster: str) -> str:
    return f"{cluster}-internal"


def cloud_router_name(cluster: str, infra: InfrastructureConfig) -> str:
    if infra.is_user_router:
        return infra.networks.vpc.cloud_router.name  # type: ignore[union-attr]
    return f"{cluster}-cloud-router"


def cloud_nat_name(cluster: str) -> str:
    return f"{cluster}-cloud-nat"


def firewall_rule_allow_internal_name(base: str) -> str:
    return f"{base}-allow-internal-access"


def firewall_rule_allow_external_name(base: str) -> str:
    return f"{base}-allow-external-access"


def firewall_rule_allow_health_checks_name(base: str) -> str:
    return f"{base}-allow-health-checks"


# =============================================================================
# Desired state
# =============================================================================


def target_network(name: str) -> Network:
    return Network(
        name=name,
        auto_create_subnetworks=False,
        routing_config=NetworkRoutingConfig(routing_mode=DEFAULT_VPC_ROUTING_MODE),
    )


def target_subnet(
    name: str,
    description: str,
    cidr: str,
    network: str | None,
    flow_logs: FlowLogs | None,
) -> Subnetwork:
    """Desired subnet; flow logs are enabled only when configured."""
    subnet = Subnetwork(
        name=name,
        description=description,
        ip_cidr_range=cidr,
        network=network,
        private_ip_google_access=False,
        enable_flow_logs=False,
    )
    if flow_logs is not None:
        subnet.enable_flow_logs = True
        subnet.log_config = SubnetworkLogConfig(
            enable=True,
            aggregation_interval=flow_logs.aggregation_interval or DEFAULT_AGGREGATION_INTERVAL,
            flow_sampling=(
                flow_logs.flow_sampling
                if flow_logs.flow_sampling is not None
                else DEFAULT_FLOW_SAMPLING
            ),
            metadata=flow_logs.metadata or DEFAULT_FLOW_LOG_METADATA,
        )
    return subnet


def target_router(name: str, description: str, network: str | None) -> Router:
    return Router(name=name, description=description, network=network)


def target_nat(
    name: str,
    subnet_url: str | None,
    nat_config: CloudNAT | None,
    nat_ips: list[str] | None = None,
) -> RouterNat:
    """Desired NAT entry for the worker subnet.

    Args:
        nat_ips: Self-links of user-provided addresses; switches to manual allocation.
    """
    nat = RouterNat(
        name=name,
        enable_dynamic_port_allocation=False,
        enable_endpoint_independent_mapping=False,
        log_config=RouterNatLogConfig(enable=True, filter="ERRORS_ONLY"),
        min_ports_per_vm=DEFAULT_NAT_MIN_PORTS_PER_VM,
        max_ports_per_vm=DEFAULT_NAT_MAX_PORTS_PER_VM,
        nat_ip_allocate_option="AUTO_ONLY",
        source_subnetwork_ip_ranges_to_nat="LIST_OF_SUBNETWORKS",
        subnetworks=[
            RouterNatSubnetworkToNat(
                name=subnet_url or "", source_ip_ranges_to_nat=["ALL_IP_RANGES"]
            )
        ],
        icmp_idle_timeout_sec=DEFAULT_NAT_ICMP_IDLE_TIMEOUT_SEC,
        tcp_established_idle_timeout_sec=DEFAULT_NAT_TCP_ESTABLISHED_IDLE_TIMEOUT_SEC,
        tcp_time_wait_timeout_sec=DEFAULT_NAT_TCP_TIME_WAIT_TIMEOUT_SEC,
        tcp_transitory_idle_timeout_sec=DEFAULT_NAT_TCP_TRANSITORY_IDLE_TIMEOUT_SEC,
        udp_idle_timeout_sec=DEFAULT_NAT_UDP_IDLE_TIMEOUT_SEC,
    )

    if nat_config is not None:
        nat.enable_dynamic_port_allocation = nat_config.enable_dynamic_port_allocation
        if nat_config.endpoint_independent_mapping is not None:
            nat.enable_endpoint_independent_mapping = (
                nat_config.endpoint_independent_mapping.enabled
            )
        for field in (
            "min_ports_per_vm",
            "max_ports_per_vm",
            "icmp_idle_timeout_sec",
            "tcp_established_idle_timeout_sec",
            "tcp_time_wait_timeout_sec",
            "tcp_transitory_idle_timeout_sec",
            "udp_idle_timeout_sec",
        ):
            value = getattr(nat_config, field)
            if value is not None:
                setattr(nat, field, value)

    if nat_ips:
        nat.nat_ip_allocate_option = "MANUAL_ONLY"
        nat.nat_ips = list(nat_ips)
    return nat


def _ingress_rule(
    name: str, network: str | None, allowed: list[FirewallRule], source_ranges: list[str]
) -> Firewall:
    return Firewall(
        name=name,
        network=network,
        direction="INGRESS",
        priority=DEFAULT_FIREWALL_PRIORITY,
        disabled=False,
        allowed=allowed,
        source_ranges=source_ranges,
    )


def firewall_rule_allow_internal(name: str, network: str | None, cidrs: list[str | None]) -> Firewall:
    return _ingress_rule(
        name,
        network,
        [
            FirewallRule(ip_protocol="icmp"),
            FirewallRule(ip_protocol="ipip"),
            FirewallRule(ip_protocol="tcp", ports=["1-65535"]),
            FirewallRule(ip_protocol="udp", ports=["1-65535"]),
        ],
        [c for c in cidrs if c],
    )


def firewall_rule_allow_external(name: str, network: str | None) -> Firewall:
    return _ingress_rule(
        name, network, [FirewallRule(ip_protocol="tcp", ports=["443"])], ["0.0.0.0/0"]
    )


def firewall_rule_allow_health_checks(name: str, network: str | None) -> Firewall:
    return _ingress_rule(
        name,
        network,
        [
            FirewallRule(ip_protocol="udp", ports=[NODE_PORT_RANGE]),
            FirewallRule(ip_protocol="tcp", ports=[NODE_PORT_RANGE]),
        ],
        list(HEALTH_CHECK_SOURCE_RANGES),
    )
