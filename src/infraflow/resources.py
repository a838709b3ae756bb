"""Pydantic descriptors mirroring the Compute and IAM REST representations.

Field names are snake_case in Python and camelCase on the wire. Unknown
fields returned by the API are ignored, except on router NAT entries: the
router's ``nats`` list is patched as a whole, so every entry keeps the
fields it came with.

Fields fall into three groups:
1. Immutable: name, self_link, id, creation_timestamp, kind (never compared)
2. Update-eligible: everything the diff functions look at
3. Output-only: fingerprint, gateway_address, ipv6_cidr_range,
   external_ipv6_prefix and assigned ids
"""

from __future__ import annotations

from typing import Any, Self

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for every REST descriptor."""

    model_config = {
        "extra": "ignore",
        "populate_by_name": True,
        "alias_generator": to_camel,
    }

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Self:
        return cls.model_validate(data)

    def to_api(self) -> dict[str, Any]:
        """REST body with unset (None) fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PassthroughModel(ApiModel):
    """Descriptor that keeps undeclared API fields under their wire names."""

    model_config = {**ApiModel.model_config, "extra": "allow"}

    def declared(self) -> dict[str, Any]:
        """Declared fields only, nested models included; extras are dropped."""
        return {name: _declared(getattr(self, name)) for name in type(self).model_fields}


def _declared(value: Any) -> Any:
    if isinstance(value, PassthroughModel):
        return value.declared()
    if isinstance(value, list):
        return [_declared(v) for v in value]
    return value


class ComputeResource(ApiModel):
    """Fields shared by every Compute resource."""

    name: str
    kind: str | None = None
    id: str | None = None
    self_link: str | None = None
    creation_timestamp: str | None = None
    description: str | None = None


# =============================================================================
# Network
# =============================================================================


class NetworkRoutingConfig(ApiModel):
    routing_mode: str | None = None


class Network(ComputeResource):
    auto_create_subnetworks: bool | None = None
    routing_config: NetworkRoutingConfig | None = None
    subnetworks: list[str] | None = None


# =============================================================================
# Subnetwork
# =============================================================================


class SubnetworkLogConfig(ApiModel):
    enable: bool | None = None
    aggregation_interval: str | None = None
    flow_sampling: float | None = None
    metadata: str | None = None


class Subnetwork(ComputeResource):
    network: str | None = None
    region: str | None = None
    ip_cidr_range: str | None = None
    enable_flow_logs: bool | None = None
    log_config: SubnetworkLogConfig | None = None
    private_ip_google_access: bool | None = None
    stack_type: str | None = None
    ipv6_access_type: str | None = None

    # Output only
    fingerprint: str | None = None
    gateway_address: str | None = None
    ipv6_cidr_range: str | None = None
    external_ipv6_prefix: str | None = None


# =============================================================================
# Router and NAT
# =============================================================================


class RouterBgp(ApiModel):
    asn: int | None = None
    advertise_mode: str | None = None
    advertised_groups: list[str] | None = None
    keepalive_interval: int | None = None


class RouterBgpPeer(ApiModel):
    name: str
    interface_name: str | None = None
    peer_ip_address: str | None = None
    peer_asn: int | None = None
    advertised_route_priority: int | None = None


class RouterNatLogConfig(PassthroughModel):
    enable: bool | None = None
    filter: str | None = None


class RouterNatSubnetworkToNat(PassthroughModel):
    name: str
    source_ip_ranges_to_nat: list[str] | None = None


class RouterNat(PassthroughModel):
    """A NAT configuration; an entry of the owning router's ``nats`` list."""

    name: str
    nat_ip_allocate_option: str | None = None
    nat_ips: list[str] | None = None
    source_subnetwork_ip_ranges_to_nat: str | None = None
    subnetworks: list[RouterNatSubnetworkToNat] | None = None
    min_ports_per_vm: int | None = None
    max_ports_per_vm: int | None = None
    enable_dynamic_port_allocation: bool | None = None
    enable_endpoint_independent_mapping: bool | None = None
    icmp_idle_timeout_sec: int | None = None
    tcp_established_idle_timeout_sec: int | None = None
    tcp_time_wait_timeout_sec: int | None = None
    tcp_transitory_idle_timeout_sec: int | None = None
    udp_idle_timeout_sec: int | None = None
    log_config: RouterNatLogConfig | None = None


class Router(ComputeResource):
    network: str | None = None
    region: str | None = None
    bgp: RouterBgp | None = None
    bgp_peers: list[RouterBgpPeer] | None = None
    nats: list[RouterNat] | None = None

    def find_nat(self, name: str) -> tuple[int, RouterNat | None]:
        """Return index and entry of the named NAT, or (-1, None)."""
        for i, nat in enumerate(self.nats or []):
            if nat.name == name:
                return i, nat
        return -1, None


# =============================================================================
# Firewall
# =============================================================================


class FirewallRule(ApiModel):
    """An allowed or denied protocol/ports tuple."""

    ip_protocol: str = Field(alias="IPProtocol")
    ports: list[str] | None = None


class FirewallLogConfig(ApiModel):
    enable: bool | None = None
    metadata: str | None = None


class Firewall(ComputeResource):
    network: str | None = None
    direction: str | None = None
    priority: int | None = None
    allowed: list[FirewallRule] | None = None
    denied: list[FirewallRule] | None = None
    source_ranges: list[str] | None = None
    destination_ranges: list[str] | None = None
    source_tags: list[str] | None = None
    target_tags: list[str] | None = None
    source_service_accounts: list[str] | None = None
    target_service_accounts: list[str] | None = None
    disabled: bool | None = None
    log_config: FirewallLogConfig | None = None


# =============================================================================
# Address, Route, ServiceAccount
# =============================================================================


class Address(ComputeResource):
    address: str | None = None
    region: str | None = None
    status: str | None = None
    address_type: str | None = None


class Route(ComputeResource):
    network: str | None = None
    dest_range: str | None = None
    next_hop_instance: str | None = None
    priority: int | None = None
    tags: list[str] | None = None


class ServiceAccount(ApiModel):
    name: str | None = None
    email: str | None = None
    account_id: str | None = None
    display_name: str | None = None
    description: str | None = None
    unique_id: str | None = None
    project_id: str | None = None


def last_segment(url: str | None) -> str:
    """Return the trailing path segment of a self-link (its resource name)."""
    if not url:
        return ""
    return url.rstrip("/").rsplit("/", 1)[-1]
