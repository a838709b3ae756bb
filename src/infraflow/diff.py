"""Diff/upsert functions computing minimal updates per resource kind.

All functions are pure: they compare a desired descriptor against the current
remote descriptor and return either None (no change needed), a Patch, or an
ordered list of update steps. Nothing here talks to the remote API.

Comparison rules:
1. Immutable fields (name, self_link, id, creation_timestamp, kind) are
   never compared.
2. Set-like lists (firewall allowed/denied, ranges, tags, service accounts)
   are compared with is_equivalent: order-independent at the top level,
   order-sensitive inside each element.
3. Subnet ranges can only grow.
4. Falsy values that must reach the API (0, False, []) are set on the patch,
   fields to be removed are cleared.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .errors import InvalidUpdateError
from .patch import Patch
from .resources import (
    Firewall,
    Network,
    Router,
    RouterNat,
    Subnetwork,
    last_segment,
)

logger = logging.getLogger(__name__)


def is_equivalent(a: Sequence[Any] | None, b: Sequence[Any] | None) -> bool:
    """Order-independent equality of two sequences.

    Every element of one sequence must be matched by a structurally equal
    element of the other. Elements are compared with ==, so nested lists
    inside an element keep their order:

        [[1], [2, 3], [4]] vs [[1], [4], [2, 3]]  -> True
        [[1], [2, 3], [4]] vs [[1], [3, 2], [4]]  -> False

    None is equivalent to an empty sequence.
    """
    left = list(a or [])
    right = list(b or [])
    if len(left) != len(right):
        return False
    remaining = list(right)
    for item in left:
        for i, candidate in enumerate(remaining):
            if item == candidate:
                del remaining[i]
                break
        else:
            return False
    return True


# =============================================================================
# Network
# =============================================================================


def network_update(desired: Network, current: Network) -> Patch | None:
    """Compute the patch for a VPC network.

    Raises:
        InvalidUpdateError: If auto_create_subnetworks differs.
    """
    if bool(desired.auto_create_subnetworks) != bool(current.auto_create_subnetworks):
        raise InvalidUpdateError("auto_create_subnetworks")

    # description is non-functional and may block the update
    if desired.routing_config == current.routing_config:
        return None
    return Patch().set("routing_config", desired.routing_config)


# =============================================================================
# Subnetwork
# =============================================================================


@dataclass(frozen=True)
class ExpandRange:
    """Expand the subnet's primary range to ip_cidr_range."""

    ip_cidr_range: str


@dataclass(frozen=True)
class PatchStep:
    """Apply patch to the subnet with the latest fingerprint."""

    patch: Patch


UpdateStep = ExpandRange | PatchStep


def _check_range_expansion(name: str, desired: str, current: str) -> None:
    try:
        desired_net = ipaddress.ip_network(desired, strict=False)
        current_net = ipaddress.ip_network(current, strict=False)
    except ValueError as e:
        raise InvalidUpdateError("ip_cidr_range", detail=str(e)) from e

    if desired_net.version == current_net.version and current_net.subnet_of(desired_net):  # type: ignore[arg-type]
        return
    raise InvalidUpdateError(
        "ip_cidr_range",
        detail=f"subnet {name} range can only be expanded, {current} is not contained in {desired}",
    )


def _log_config_matches(desired: Subnetwork, current: Subnetwork) -> bool:
    if desired.log_config is None:
        return current.log_config is None or not current.log_config.enable
    if current.log_config is None:
        return False
    wanted = desired.log_config.model_dump(exclude_none=True)
    actual = current.log_config.model_dump()
    return all(actual.get(k) == v for k, v in wanted.items())


def subnet_updates(desired: Subnetwork, current: Subnetwork) -> list[UpdateStep]:
    """Compute the ordered update steps for a subnet.

    The flow-log toggle cannot be combined with other subnet changes in one
    call, so it is issued as its own patch before the log config.

    Returns:
        Steps in application order; empty when nothing changes.

    Raises:
        InvalidUpdateError: If the desired range does not contain the current one.
    """
    steps: list[UpdateStep] = []

    if desired.ip_cidr_range and desired.ip_cidr_range != current.ip_cidr_range:
        _check_range_expansion(current.name, desired.ip_cidr_range, current.ip_cidr_range or "")
        steps.append(ExpandRange(desired.ip_cidr_range))

    desired_flow_logs = bool(desired.enable_flow_logs)
    if desired_flow_logs != bool(current.enable_flow_logs):
        steps.append(PatchStep(Patch().set("enable_flow_logs", desired_flow_logs)))

    if not _log_config_matches(desired, current):
        steps.append(PatchStep(Patch().set("log_config", desired.log_config)))

    return steps


# =============================================================================
# Router and NAT
# =============================================================================


def router_update(desired: Router, current: Router) -> Patch | None:
    """Compute the patch for a router's BGP settings.

    NATs are managed separately with nat_upsert and nat_delete.
    """
    patch = Patch()
    if desired.bgp != current.bgp:
        patch.set("bgp", desired.bgp)
    if list(desired.bgp_peers or []) != list(current.bgp_peers or []):
        patch.set("bgp_peers", list(desired.bgp_peers or []))
    return patch or None


def _nat_body(nat: RouterNat) -> dict[str, Any]:
    body = nat.to_api()
    if not nat.nat_ips:
        body["natIps"] = None
    return body


def nat_upsert(router: Router, desired: RouterNat) -> Patch | None:
    """Insert or replace a NAT entry in the router's list.

    The patch always carries the complete nats list since the API replaces
    the list as a whole. Other entries are sent back with every field the
    API returned. Returns None if the entry already matches on the declared
    fields.
    """
    bodies = [n.to_api() for n in router.nats or []]
    index, existing = router.find_nat(desired.name)
    if existing is not None:
        if existing.declared() == desired.declared():
            return None
        bodies[index] = _nat_body(desired)
    else:
        bodies.append(_nat_body(desired))
    return Patch().set("nats", bodies)


def nat_delete(router: Router, name: str) -> Patch | None:
    """Remove a NAT entry; None when the router has no such entry.

    The remaining list is sent unchanged, even when empty.
    """
    index, existing = router.find_nat(name)
    if existing is None:
        return None
    bodies = [n.to_api() for n in router.nats or []]
    del bodies[index]
    return Patch().set("nats", bodies)


# =============================================================================
# Firewall
# =============================================================================

_FIREWALL_SET_FIELDS = (
    "allowed",
    "denied",
    "source_ranges",
    "destination_ranges",
    "source_tags",
    "target_tags",
    "source_service_accounts",
    "target_service_accounts",
)


def firewall_update(current: Firewall, desired: Firewall) -> Patch | None:
    """Compute the minimal patch for a firewall rule.

    Raises:
        InvalidUpdateError: If the rule belongs to another network.
    """
    if (
        desired.network
        and current.network
        and last_segment(desired.network) != last_segment(current.network)
    ):
        raise InvalidUpdateError("network")

    patch = Patch()
    for name in _FIREWALL_SET_FIELDS:
        want = getattr(desired, name) or []
        have = getattr(current, name) or []
        if is_equivalent(have, want):
            continue
        if want:
            patch.set(name, want)
        else:
            patch.clear(name)

    if desired.direction and desired.direction != current.direction:
        patch.set("direction", desired.direction)

    if bool(desired.disabled) != bool(current.disabled):
        patch.set("disabled", bool(desired.disabled))

    if desired.priority is not None and desired.priority != current.priority:
        patch.set("priority", desired.priority)

    if desired.log_config is not None:
        have_log = current.log_config
        if (
            have_log is None
            or bool(have_log.enable) != bool(desired.log_config.enable)
            or have_log.metadata != desired.log_config.metadata
        ):
            patch.set("log_config", desired.log_config)

    if not patch:
        logger.debug("No change to firewall rule", extra={"firewall": desired.name})
        return None
    return patch
