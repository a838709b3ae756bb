"""Tests for the diff/upsert functions."""

import pytest

from infraflow.diff import (
    ExpandRange,
    PatchStep,
    firewall_update,
    is_equivalent,
    nat_delete,
    nat_upsert,
    network_update,
    router_update,
    subnet_updates,
)
from infraflow.errors import InvalidUpdateError
from infraflow.models import CloudNAT, FlowLogs
from infraflow.patch import apply_patch
from infraflow.resources import (
    Firewall,
    FirewallLogConfig,
    FirewallRule,
    Network,
    NetworkRoutingConfig,
    Router,
    RouterBgp,
    RouterNat,
)
from infraflow.targets import (
    firewall_rule_allow_internal,
    target_nat,
    target_network,
    target_subnet,
)

NETWORK = "https://www.googleapis.com/compute/v1/projects/p/global/networks/vpc"
SUBNET = "https://www.googleapis.com/compute/v1/projects/p/regions/r/subnetworks/nodes"


FOREIGN_NAT = {
    "name": "team-b-nat",
    "natIpAllocateOption": "MANUAL_ONLY",
    "natIps": ["https://www.googleapis.com/compute/v1/projects/p/regions/r/addresses/b-1"],
    "drainNatIps": ["https://www.googleapis.com/compute/v1/projects/p/regions/r/addresses/b-0"],
    "sourceSubnetworkIpRangesToNat": "LIST_OF_SUBNETWORKS",
    "subnetworks": [
        {
            "name": "https://www.googleapis.com/compute/v1/projects/p/regions/r/subnetworks/b",
            "sourceIpRangesToNat": ["LIST_OF_SECONDARY_IP_RANGES"],
            "secondaryIpRangeNames": ["pods"],
        }
    ],
    "rules": [
        {
            "ruleNumber": 100,
            "match": "destination.ip == '1.1.1.1'",
            "action": {"sourceNatActiveIps": ["addr-a"]},
        }
    ],
    "endpointTypes": ["ENDPOINT_TYPE_VM"],
    "type": "PUBLIC",
    "minPortsPerVm": 64,
    "logConfig": {"enable": True, "filter": "ERRORS_ONLY"},
}


class TestIsEquivalent:
    """Tests for order-independent comparison."""

    def test_top_level_order_is_ignored(self) -> None:
        assert is_equivalent([[1], [2, 3], [4]], [[1], [4], [2, 3]])

    def test_nested_order_matters(self) -> None:
        assert not is_equivalent([[1], [2, 3], [4]], [[1], [3, 2], [4]])

    def test_multiplicity_matters(self) -> None:
        assert not is_equivalent(["a", "a", "b"], ["a", "b", "b"])

    def test_none_equals_empty(self) -> None:
        assert is_equivalent(None, [])
        assert not is_equivalent(None, ["x"])

    def test_models(self) -> None:
        a = [FirewallRule(ip_protocol="tcp", ports=["80", "443"]), FirewallRule(ip_protocol="icmp")]
        b = [FirewallRule(ip_protocol="icmp"), FirewallRule(ip_protocol="tcp", ports=["80", "443"])]
        c = [FirewallRule(ip_protocol="icmp"), FirewallRule(ip_protocol="tcp", ports=["443", "80"])]

        assert is_equivalent(a, b)
        assert not is_equivalent(a, c)


class TestNetworkUpdate:
    """Tests for network_update."""

    def test_no_change(self) -> None:
        desired = target_network("vpc")
        assert network_update(desired, desired.model_copy(deep=True)) is None

    def test_routing_mode_change(self) -> None:
        current = target_network("vpc")
        current.routing_config = NetworkRoutingConfig(routing_mode="GLOBAL")

        patch = network_update(target_network("vpc"), current)

        assert patch is not None
        assert patch.to_api() == {"routingConfig": {"routingMode": "REGIONAL"}}

    def test_auto_create_subnetworks_is_immutable(self) -> None:
        current = Network(name="vpc", auto_create_subnetworks=True)

        with pytest.raises(InvalidUpdateError) as exc_info:
            network_update(target_network("vpc"), current)

        assert exc_info.value.fields == ["auto_create_subnetworks"]


class TestSubnetUpdates:
    """Tests for subnet_updates."""

    def test_no_change(self) -> None:
        desired = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, None)
        current = desired.model_copy(deep=True)
        current.fingerprint = "fp"

        assert subnet_updates(desired, current) == []

    def test_expand_range(self) -> None:
        desired = target_subnet("nodes", "d", "10.250.0.0/15", NETWORK, None)
        current = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, None)

        assert subnet_updates(desired, current) == [ExpandRange("10.250.0.0/15")]

    @pytest.mark.parametrize("desired_range", ["10.250.0.0/17", "10.0.0.0/16", "fd00::/64"])
    def test_range_cannot_shrink_or_move(self, desired_range: str) -> None:
        desired = target_subnet("nodes", "d", desired_range, NETWORK, None)
        current = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, None)

        with pytest.raises(InvalidUpdateError) as exc_info:
            subnet_updates(desired, current)

        assert exc_info.value.fields == ["ip_cidr_range"]

    def test_enable_flow_logs_precedes_log_config(self) -> None:
        desired = target_subnet(
            "nodes", "d", "10.250.0.0/16", NETWORK, FlowLogs(flow_sampling=0.2)
        )
        current = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, None)

        steps = subnet_updates(desired, current)

        assert len(steps) == 2
        assert all(isinstance(s, PatchStep) for s in steps)
        assert steps[0].patch.to_api() == {"enableFlowLogs": True}
        assert steps[1].patch.fields == ["log_config"]
        assert steps[1].patch.to_api()["logConfig"]["flowSampling"] == 0.2

    def test_disable_flow_logs(self) -> None:
        desired = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, None)
        current = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, FlowLogs(metadata="INCLUDE_ALL_METADATA"))

        steps = subnet_updates(desired, current)

        assert steps[0].patch.to_api() == {"enableFlowLogs": False}
        assert steps[1].patch.to_api() == {"logConfig": None}

    def test_updates_are_idempotent(self) -> None:
        desired = target_subnet(
            "nodes", "d", "10.250.0.0/15", NETWORK, FlowLogs(aggregation_interval="INTERVAL_1_MIN")
        )
        current = target_subnet("nodes", "d", "10.250.0.0/16", NETWORK, None)

        for step in subnet_updates(desired, current):
            if isinstance(step, ExpandRange):
                current.ip_cidr_range = step.ip_cidr_range
            else:
                current = apply_patch(current, step.patch)

        assert subnet_updates(desired, current) == []


class TestRouterUpdate:
    """Tests for router_update."""

    def test_no_change_ignores_nats(self) -> None:
        desired = Router(name="router", network=NETWORK)
        current = Router(name="router", network=NETWORK, nats=[RouterNat(name="nat")])

        assert router_update(desired, current) is None

    def test_bgp_change(self) -> None:
        desired = Router(name="router", bgp=RouterBgp(asn=64512))
        patch = router_update(desired, Router(name="router"))

        assert patch is not None
        assert patch.to_api() == {"bgp": {"asn": 64512}}


class TestNatUpsert:
    """Tests for nat_upsert and nat_delete."""

    def test_insert_appends_to_existing_nats(self) -> None:
        other = RouterNat(name="other", nat_ip_allocate_option="AUTO_ONLY")
        router = Router(name="router", nats=[other])
        desired = target_nat("nat", SUBNET, None)

        patch = nat_upsert(router, desired)

        assert patch is not None
        nats = patch.get("nats")
        assert [n["name"] for n in nats] == ["other", "nat"]
        # An empty natIps is sent as explicit null
        assert nats[1]["natIps"] is None

    def test_unchanged_returns_none(self) -> None:
        desired = target_nat("nat", SUBNET, CloudNAT(min_ports_per_vm=4096))
        router = Router(name="router", nats=[desired.model_copy(deep=True)])

        assert nat_upsert(router, desired) is None

    def test_replace_in_place(self) -> None:
        router = Router(
            name="router",
            nats=[target_nat("a", SUBNET, None), target_nat("nat", SUBNET, None), target_nat("z", SUBNET, None)],
        )
        desired = target_nat("nat", SUBNET, CloudNAT(min_ports_per_vm=4096))

        patch = nat_upsert(router, desired)

        nats = patch.get("nats")
        assert [n["name"] for n in nats] == ["a", "nat", "z"]
        assert nats[1]["minPortsPerVm"] == 4096

    def test_upsert_is_idempotent(self) -> None:
        router = Router(name="router")
        desired = target_nat("nat", SUBNET, None, ["addr-link"])

        updated = apply_patch(router, nat_upsert(router, desired))

        assert nat_upsert(updated, desired) is None
        assert updated.find_nat("nat")[1].nat_ips == ["addr-link"]

    def test_delete_sends_remaining_list(self) -> None:
        router = Router(name="router", nats=[target_nat("nat", SUBNET, None)])

        patch = nat_delete(router, "nat")

        assert patch is not None
        assert patch.to_api() == {"nats": []}

    def test_upsert_keeps_other_entries_verbatim(self) -> None:
        router = Router.from_api({"name": "shared-router", "nats": [FOREIGN_NAT]})

        patch = nat_upsert(router, target_nat("nat", SUBNET, None))

        assert patch is not None
        nats = patch.to_api()["nats"]
        assert nats[0] == FOREIGN_NAT
        assert nats[1]["name"] == "nat"

    def test_replace_keeps_other_entries_verbatim(self) -> None:
        ours = target_nat("nat", SUBNET, None)
        router = Router.from_api({"name": "shared-router", "nats": [ours.to_api(), FOREIGN_NAT]})

        patch = nat_upsert(router, target_nat("nat", SUBNET, CloudNAT(min_ports_per_vm=4096)))

        assert patch is not None
        nats = patch.to_api()["nats"]
        assert nats[0]["minPortsPerVm"] == 4096
        assert nats[1] == FOREIGN_NAT

    def test_delete_keeps_other_entries_verbatim(self) -> None:
        ours = target_nat("nat", SUBNET, None)
        router = Router.from_api({"name": "shared-router", "nats": [FOREIGN_NAT, ours.to_api()]})

        patch = nat_delete(router, "nat")

        assert patch is not None
        assert patch.to_api() == {"nats": [FOREIGN_NAT]}

    def test_fields_added_by_the_api_are_not_a_change(self) -> None:
        desired = target_nat("nat", SUBNET, CloudNAT(min_ports_per_vm=4096))
        returned = {**desired.to_api(), "type": "PUBLIC", "endpointTypes": ["ENDPOINT_TYPE_VM"]}
        router = Router.from_api({"name": "router", "nats": [returned]})

        assert nat_upsert(router, desired) is None

    def test_patched_router_keeps_other_entries(self) -> None:
        router = Router.from_api({"name": "shared-router", "nats": [FOREIGN_NAT]})

        updated = apply_patch(router, nat_upsert(router, target_nat("nat", SUBNET, None)))

        assert updated.find_nat("team-b-nat")[1].to_api() == FOREIGN_NAT

    def test_delete_missing_returns_none(self) -> None:
        assert nat_delete(Router(name="router"), "nat") is None


class TestFirewallUpdate:
    """Tests for firewall_update."""

    def _rule(self) -> Firewall:
        return firewall_rule_allow_internal("fw", NETWORK, ["10.0.0.0/8", "100.96.0.0/11"])

    def test_reordered_sets_are_unchanged(self) -> None:
        current = self._rule()
        current.allowed = list(reversed(current.allowed or []))
        current.source_ranges = list(reversed(current.source_ranges or []))

        assert firewall_update(current, self._rule()) is None

    def test_changed_ranges(self) -> None:
        current = self._rule()
        current.source_ranges = ["10.0.0.0/8"]

        patch = firewall_update(current, self._rule())

        assert patch is not None
        assert patch.fields == ["source_ranges"]

    def test_removed_tags_are_cleared(self) -> None:
        current = self._rule()
        current.target_tags = ["old"]

        patch = firewall_update(current, self._rule())

        assert patch.to_api() == {"targetTags": None}

    def test_falsy_priority_and_disabled_are_sent(self) -> None:
        desired = self._rule()
        desired.priority = 0
        current = self._rule()
        current.disabled = True

        patch = firewall_update(current, desired)

        assert patch.to_api() == {"disabled": False, "priority": 0}

    def test_log_config(self) -> None:
        desired = self._rule()
        desired.log_config = FirewallLogConfig(enable=True, metadata="INCLUDE_ALL_METADATA")

        patch = firewall_update(self._rule(), desired)

        assert patch.to_api() == {
            "logConfig": {"enable": True, "metadata": "INCLUDE_ALL_METADATA"}
        }

    def test_network_mismatch(self) -> None:
        current = self._rule()
        current.network = NETWORK.replace("/vpc", "/other")

        with pytest.raises(InvalidUpdateError) as exc_info:
            firewall_update(current, self._rule())

        assert exc_info.value.fields == ["network"]

    def test_update_is_idempotent(self) -> None:
        current = firewall_rule_allow_internal("fw", NETWORK, ["10.0.0.0/8"])
        current.target_tags = ["x"]
        desired = self._rule()

        updated = apply_patch(current, firewall_update(current, desired))

        assert firewall_update(updated, desired) is None
