"""Selection of cluster-owned firewall rules and routes for teardown.

Besides the rules it creates itself, a cluster accumulates firewall rules and
routes created by kubernetes controllers. Both are matched by naming
conventions and must be gone before the VPC can be deleted.
"""

from __future__ import annotations

from .client import FirewallListOpts, RouteListOpts
from .resources import Firewall, Route, last_segment

KUBERNETES_FIREWALL_NAME_PREFIX = "k8s"
SHOOT_ROUTE_PREFIX = "shoot--"


def _in_network(resource_network: str | None, network: str) -> bool:
    return bool(resource_network) and resource_network.endswith(network)  # type: ignore[union-attr]


def firewall_list_opts(network: str, cluster: str) -> FirewallListOpts:
    """Rules in network named with the cluster prefix, plus kubernetes rules targeting the cluster tag."""

    def predicate(firewall: Firewall) -> bool:
        if not _in_network(firewall.network, network):
            return False
        if firewall.name.startswith(KUBERNETES_FIREWALL_NAME_PREFIX):
            return cluster in (firewall.target_tags or [])
        return firewall.name.startswith(cluster)

    return FirewallListOpts(predicate=predicate)


def route_list_opts(network: str, cluster: str) -> RouteListOpts:
    """Routes in network created for instances of the cluster."""

    def predicate(route: Route) -> bool:
        if not route.name.startswith(SHOOT_ROUTE_PREFIX):
            return False
        if not _in_network(route.network, network):
            return False
        return last_segment(route.next_hop_instance).startswith(cluster)

    return RouteListOpts(predicate=predicate)
