"""Ensure operations: converge one resource kind per call.

Every ensure operation follows the same shape:
1. Resolve the desired descriptor from config and whiteboard prerequisites
2. Fetch the current remote resource by name (absence is not an error)
3. Insert when absent, otherwise apply the diff through the updater
4. Store the result in the whiteboard and mark that resources exist

Deletion counterparts treat an absent resource as success and drop the
corresponding whiteboard key.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from typing import TypeVar

from .cleanup import firewall_list_opts, route_list_opts
from .client import ComputeClient, IAMClient
from .errors import MissingPrerequisiteError, UserManagedResourceNotFoundError
from .flow_context import inform_on_waiting, log_from_context
from .models import InfrastructureConfig
from .resources import Address, Firewall, Network, Router, Subnetwork
from .state import RouteEntry
from .targets import (
    cloud_nat_name,
    cloud_router_name,
    firewall_rule_allow_external,
    firewall_rule_allow_external_name,
    firewall_rule_allow_health_checks,
    firewall_rule_allow_health_checks_name,
    firewall_rule_allow_internal,
    firewall_rule_allow_internal_name,
    internal_subnet_name,
    service_account_name,
    subnet_name,
    target_nat,
    target_network,
    target_router,
    target_subnet,
    vpc_name,
)
from .updater import Updater
from .whiteboard import Whiteboard

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Whiteboard keys
KEY_RESOURCES_EXIST = "resources_exist"
CHILD_IDS = "ids"
KEY_SERVICE_ACCOUNT_EMAIL = "service-account-email"

OBJECT_KEY_VPC = "vpc"
OBJECT_KEY_NODE_SUBNET = "subnet-nodes"
OBJECT_KEY_INTERNAL_SUBNET = "subnet-internal"
OBJECT_KEY_ROUTER = "router"
OBJECT_KEY_NAT = "nat"
OBJECT_KEY_IP_ADDRESSES = "addresses/ip"
OBJECT_KEY_FIREWALL_RULES = "firewall-rules"
OBJECT_KEY_ROUTES = "routes"

NODES_SUBNET_DESCRIPTION = "infraflow-managed worker subnet"
INTERNAL_SUBNET_DESCRIPTION = "infraflow-managed internal subnet"
ROUTER_DESCRIPTION = "infraflow-managed router"


class Ensurer:
    """Ensure and teardown operations for the resources of one cluster.

    All operations are coroutine methods without arguments so they can be
    registered as flow tasks directly.
    """

    def __init__(
        self,
        *,
        cluster_name: str,
        region: str,
        infra: InfrastructureConfig,
        compute: ComputeClient,
        iam: IAMClient,
        updater: Updater,
        whiteboard: Whiteboard,
        waiter_period: float,
    ) -> None:
        self.cluster_name = cluster_name
        self.region = region
        self.infra = infra
        self.compute = compute
        self.iam = iam
        self.updater = updater
        self.whiteboard = whiteboard
        self.waiter_period = waiter_period

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, key: str, cls: type[T]) -> T:
        obj = self.whiteboard.get_object_as(key, cls)
        if obj is None:
            raise MissingPrerequisiteError(key)
        return obj

    def _mark_resources_exist(self) -> None:
        self.whiteboard.set(KEY_RESOURCES_EXIST, "true")

    def _waiting(self, message: str, **fields: str) -> AbstractAsyncContextManager[None]:
        return inform_on_waiting(message, self.waiter_period, **fields)

    # ------------------------------------------------------------------
    # Service account
    # ------------------------------------------------------------------

    async def ensure_service_account(self) -> None:
        name = service_account_name(self.cluster_name)
        sa = await self.iam.get_service_account(name)
        if sa is None:
            log_from_context().info("Creating service account", extra={"service_account": name})
            async with self._waiting("creating service account", service_account=name):
                sa = await self.iam.create_service_account(name)
            self._mark_resources_exist()
        if sa.email:
            self.whiteboard.get_child(CHILD_IDS).set(KEY_SERVICE_ACCOUNT_EMAIL, sa.email)

    async def ensure_service_account_deleted(self) -> None:
        name = service_account_name(self.cluster_name)
        log_from_context().info("Deleting service account", extra={"service_account": name})
        await self.iam.delete_service_account(name)
        self.whiteboard.get_child(CHILD_IDS).delete(KEY_SERVICE_ACCOUNT_EMAIL)

    # ------------------------------------------------------------------
    # VPC
    # ------------------------------------------------------------------

    async def ensure_vpc(self) -> None:
        if self.infra.is_user_vpc:
            await self._ensure_user_managed_vpc()
            return

        name = vpc_name(self.cluster_name, self.infra)
        desired = target_network(name)
        current = await self.compute.get_network(name)
        if current is None:
            async with self._waiting("creating vpc", vpc=name):
                current = await self.compute.insert_network(desired)
        else:
            async with self._waiting("updating vpc", vpc=name):
                current = await self.updater.vpc(desired, current)

        self._mark_resources_exist()
        self.whiteboard.set_object(OBJECT_KEY_VPC, current)

    async def _ensure_user_managed_vpc(self) -> None:
        name = vpc_name(self.cluster_name, self.infra)
        vpc = await self.compute.get_network(name)
        if vpc is None:
            log_from_context().error("Failed to locate user-managed VPC", extra={"vpc": name})
            raise UserManagedResourceNotFoundError("VPC", name)
        self.whiteboard.set_object(OBJECT_KEY_VPC, vpc)

    async def ensure_vpc_deleted(self) -> None:
        name = vpc_name(self.cluster_name, self.infra)
        async with self._waiting("deleting vpc", vpc=name):
            await self.compute.delete_network(name)
        self.whiteboard.delete_object(OBJECT_KEY_VPC)

    # ------------------------------------------------------------------
    # Subnets
    # ------------------------------------------------------------------

    async def ensure_subnet(self) -> None:
        vpc = self._require(OBJECT_KEY_VPC, Network)
        name = subnet_name(self.cluster_name)
        desired = target_subnet(
            name,
            NODES_SUBNET_DESCRIPTION,
            self.infra.worker_cidr,
            vpc.self_link,
            self.infra.networks.flow_logs,
        )
        subnet = await self._upsert_subnet(desired)
        self._mark_resources_exist()
        self.whiteboard.set_object(OBJECT_KEY_NODE_SUBNET, subnet)

    async def ensure_internal_subnet(self) -> None:
        if self.infra.networks.internal is None:
            await self.ensure_internal_subnet_deleted()
            return

        vpc = self._require(OBJECT_KEY_VPC, Network)
        desired = target_subnet(
            internal_subnet_name(self.cluster_name),
            INTERNAL_SUBNET_DESCRIPTION,
            self.infra.networks.internal,
            vpc.self_link,
            None,
        )
        subnet = await self._upsert_subnet(desired)
        self._mark_resources_exist()
        self.whiteboard.set_object(OBJECT_KEY_INTERNAL_SUBNET, subnet)

    async def _upsert_subnet(self, desired: Subnetwork) -> Subnetwork:
        current = await self.compute.get_subnet(self.region, desired.name)
        if current is None:
            async with self._waiting("creating subnet", subnet=desired.name):
                return await self.compute.insert_subnet(self.region, desired)
        async with self._waiting("updating subnet", subnet=desired.name):
            return await self.updater.subnet(self.region, desired, current)

    async def ensure_subnet_deleted(self) -> None:
        name = subnet_name(self.cluster_name)
        async with self._waiting("deleting subnet", subnet=name):
            await self.compute.delete_subnet(self.region, name)
        self.whiteboard.delete_object(OBJECT_KEY_NODE_SUBNET)

    async def ensure_internal_subnet_deleted(self) -> None:
        name = internal_subnet_name(self.cluster_name)
        log_from_context().info("Deleting internal subnet", extra={"subnet": name})
        async with self._waiting("deleting internal subnet", subnet=name):
            await self.compute.delete_subnet(self.region, name)
        self.whiteboard.delete_object(OBJECT_KEY_INTERNAL_SUBNET)

    # ------------------------------------------------------------------
    # Router, addresses and NAT
    # ------------------------------------------------------------------

    async def ensure_cloud_router(self) -> None:
        name = cloud_router_name(self.cluster_name, self.infra)
        if self.infra.is_user_router:
            log_from_context().info("Ensuring user-managed router", extra={"router": name})
            router = await self.compute.get_router(self.region, name)
            if router is None:
                raise UserManagedResourceNotFoundError("CloudRouter", name)
            self.whiteboard.set_object(OBJECT_KEY_ROUTER, router)
            return

        vpc = self._require(OBJECT_KEY_VPC, Network)
        desired = target_router(name, ROUTER_DESCRIPTION, vpc.self_link)
        router = await self.compute.get_router(self.region, name)
        if router is None:
            async with self._waiting("creating router", router=name):
                router = await self.compute.insert_router(self.region, desired)
        else:
            async with self._waiting("updating router", router=name):
                router = await self.updater.router(self.region, desired, router)

        self._mark_resources_exist()
        self.whiteboard.set_object(OBJECT_KEY_ROUTER, router)

    async def ensure_cloud_router_deleted(self) -> None:
        if self.infra.is_user_router:
            return
        name = cloud_router_name(self.cluster_name, self.infra)
        async with self._waiting("deleting router", router=name):
            await self.compute.delete_router(self.region, name)
        self.whiteboard.delete_object(OBJECT_KEY_ROUTER)

    async def ensure_addresses(self) -> None:
        """Look up the user-provided NAT addresses."""
        names = self.infra.nat_ip_names
        if not names:
            return
        addresses: list[Address] = []
        for name in names:
            address = await self.compute.get_address(self.region, name)
            if address is None:
                log_from_context().error(
                    "Failed to locate user-managed IP address", extra={"address": name}
                )
                raise UserManagedResourceNotFoundError("address", name)
            addresses.append(address)
        self.whiteboard.set_object(OBJECT_KEY_IP_ADDRESSES, addresses)

    async def ensure_cloud_nat(self) -> None:
        router = self._require(OBJECT_KEY_ROUTER, Router)
        subnet = self._require(OBJECT_KEY_NODE_SUBNET, Subnetwork)
        addresses = self.whiteboard.get_object_as(OBJECT_KEY_IP_ADDRESSES, list) or []
        nat_ips = [a.self_link or a.name for a in addresses]

        desired = target_nat(
            cloud_nat_name(self.cluster_name),
            subnet.self_link,
            self.infra.networks.cloud_nat,
            nat_ips,
        )
        async with self._waiting("ensuring cloud NAT", nat=desired.name):
            router, nat = await self.updater.nat(self.region, router, desired)

        self._mark_resources_exist()
        self.whiteboard.set_object(OBJECT_KEY_ROUTER, router)
        self.whiteboard.set_object(OBJECT_KEY_NAT, nat)

    async def ensure_cloud_nat_deleted(self) -> None:
        router_name = cloud_router_name(self.cluster_name, self.infra)
        nat_name = cloud_nat_name(self.cluster_name)
        async with self._waiting("deleting cloud NAT", nat=nat_name):
            router = await self.updater.delete_nat(self.region, router_name, nat_name)
        if router is not None:
            self.whiteboard.set_object(OBJECT_KEY_ROUTER, router)
        self.whiteboard.delete_object(OBJECT_KEY_NAT)

    # ------------------------------------------------------------------
    # Firewall rules
    # ------------------------------------------------------------------

    async def ensure_firewall_rules(self) -> None:
        vpc = self._require(OBJECT_KEY_VPC, Network)
        cidrs = [
            self.infra.networking.pods,
            self.infra.networks.internal,
            self.infra.networks.workers,
            self.infra.networks.worker,
        ]
        rules = [
            firewall_rule_allow_external(
                firewall_rule_allow_external_name(self.cluster_name), vpc.self_link
            ),
            firewall_rule_allow_internal(
                firewall_rule_allow_internal_name(self.cluster_name), vpc.self_link, cidrs
            ),
            firewall_rule_allow_health_checks(
                firewall_rule_allow_health_checks_name(self.cluster_name), vpc.self_link
            ),
        ]

        ensured: list[Firewall] = []
        for rule in rules:
            current = await self.compute.get_firewall_rule(rule.name)
            if current is None:
                log_from_context().info("Creating firewall rule", extra={"firewall": rule.name})
                ensured.append(await self.compute.insert_firewall_rule(rule))
            else:
                ensured.append(await self.updater.firewall(current, rule))

        self._mark_resources_exist()
        self.whiteboard.set_object(OBJECT_KEY_FIREWALL_RULES, ensured)

    async def ensure_firewall_rules_deleted(self) -> None:
        network = vpc_name(self.cluster_name, self.infra)
        rules = await self.compute.list_firewall_rules(
            firewall_list_opts(network, self.cluster_name)
        )
        for rule in rules:
            log_from_context().info("Destroying firewall rule", extra={"firewall": rule.name})
            await self.compute.delete_firewall_rule(rule.name)
        self.whiteboard.delete_object(OBJECT_KEY_FIREWALL_RULES)

    # ------------------------------------------------------------------
    # Kubernetes routes
    # ------------------------------------------------------------------

    async def ensure_kubernetes_routes_deleted(self) -> None:
        """Delete routes created for cluster instances.

        Routes found are recorded in the whiteboard first, so a restarted
        run still knows about the ones not yet deleted.
        """
        network = vpc_name(self.cluster_name, self.infra)
        routes = await self.compute.list_routes(route_list_opts(network, self.cluster_name))

        pending = {
            r.name: r for r in self.whiteboard.get_object_as(OBJECT_KEY_ROUTES, list) or []
        }
        for route in routes:
            pending[route.name] = RouteEntry(
                name=route.name,
                destination_range=route.dest_range or "",
                next_hop_instance=route.next_hop_instance or "",
            )
        self.whiteboard.set_object(OBJECT_KEY_ROUTES, list(pending.values()))

        for name in list(pending):
            log_from_context().info("Destroying route", extra={"route": name})
            await self.compute.delete_route(name)
            del pending[name]
            self.whiteboard.set_object(OBJECT_KEY_ROUTES, list(pending.values()))
