"""Reconciliation context: builds and runs the reconcile and delete flows.

A FlowContext is created per run. It seeds a whiteboard from the persisted
state, wires the ensure operations into a task graph and writes status and
state back through the StateStore.

PERSISTENCE:
- The whiteboard's flat export is written after every finished task
- A failed run still writes state, best-effort, before raising
- Status is written only after a successful reconcile
"""

from __future__ import annotations

import logging

from .client import ComputeClient, IAMClient
from .config import Config
from .ensure import (
    CHILD_IDS,
    KEY_RESOURCES_EXIST,
    KEY_SERVICE_ACCOUNT_EMAIL,
    OBJECT_KEY_INTERNAL_SUBNET,
    OBJECT_KEY_IP_ADDRESSES,
    OBJECT_KEY_NODE_SUBNET,
    OBJECT_KEY_ROUTER,
    OBJECT_KEY_ROUTES,
    OBJECT_KEY_VPC,
    Ensurer,
)
from .flow import Flow, FlowError, Graph
from .flow_context import BasicFlowContext, dependencies, do_if, timeout
from .models import (
    PURPOSE_INTERNAL,
    PURPOSE_NODES,
    VPC,
    CloudRouter,
    InfrastructureConfig,
    InfrastructureStatus,
    NatIPStatus,
    NetworkingStatus,
    NetworkStatus,
    SubnetStatus,
)
from .resources import Address, Network, Router, Subnetwork
from .state import FlowState, RouteEntry, StateStore
from .updater import Updater
from .whiteboard import Whiteboard

logger = logging.getLogger(__name__)

RECONCILE_FLOW_NAME = "infrastructure reconciliation"
DELETE_FLOW_NAME = "infrastructure deletion"


def causes(err: FlowError) -> BaseException:
    """Unwrap a flow error to what its tasks raised.

    A single cause is returned as-is; several become an exception group.
    """
    if len(err.causes) == 1:
        return err.causes[0]
    return BaseExceptionGroup(str(err), list(err.causes))


class FlowContext:
    """Everything one reconcile or delete run needs.

    Attributes:
        config: Engine configuration
        infra: Desired infrastructure
        whiteboard: Run-scoped store, seeded from the persisted state
    """

    def __init__(
        self,
        *,
        config: Config,
        infra: InfrastructureConfig,
        state: FlowState | None,
        compute: ComputeClient,
        iam: IAMClient,
        store: StateStore,
        updater: Updater | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.infra = infra
        self.state = state
        self.store = store
        self.log = log or logger

        self.whiteboard = Whiteboard()
        if state is not None:
            self.whiteboard.import_flat(state.data)
            if state.routes:
                self.whiteboard.set_object(OBJECT_KEY_ROUTES, list(state.routes))

        self.ensurer = Ensurer(
            cluster_name=config.cluster_name,
            region=config.region,
            infra=infra,
            compute=compute,
            iam=iam,
            updater=updater or Updater(compute),
            whiteboard=self.whiteboard,
            waiter_period=config.waiter_period_seconds,
        )

    @classmethod
    async def from_store(
        cls,
        *,
        config: Config,
        infra: InfrastructureConfig,
        compute: ComputeClient,
        iam: IAMClient,
        store: StateStore,
        updater: Updater | None = None,
    ) -> FlowContext:
        """Create a context with the state currently held by store."""
        stored = await store.load()
        return cls(
            config=config,
            infra=infra,
            state=FlowState.from_payload(stored.state),
            compute=compute,
            iam=iam,
            store=store,
            updater=updater,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def reconcile(self) -> InfrastructureStatus:
        """Converge all resources, then write status and state.

        Raises:
            The exception of the failed task, or an exception group when
            several tasks failed.
        """
        flow = self.build_reconcile_graph().compile()
        self.log.info(
            "Starting flow reconciliation",
            extra={"cluster": self.config.cluster_name, "tasks": len(flow.order)},
        )
        await self._run(flow)

        status = self.compute_status()
        await self.store.patch_status_and_state(status.to_dict(), self.flow_state().to_payload())
        self.log.info(
            "Flow reconciliation finished",
            extra={"cluster": self.config.cluster_name, "vpc": status.networks.vpc.name},
        )
        return status

    async def delete(self) -> bool:
        """Tear down all resources created for the cluster.

        Returns:
            False when the persisted state records no created resources and
            nothing was done.
        """
        if (self.whiteboard.get(KEY_RESOURCES_EXIST) or "").lower() != "true":
            self.log.info(
                "Skipping deletion, no resources were created",
                extra={"cluster": self.config.cluster_name},
            )
            return False

        flow = self.build_delete_graph().compile()
        self.log.info(
            "Starting flow deletion",
            extra={"cluster": self.config.cluster_name, "tasks": len(flow.order)},
        )
        await self._run(flow)

        self.whiteboard.delete(KEY_RESOURCES_EXIST)
        await self.persist_state()
        self.log.info("Flow deletion finished", extra={"cluster": self.config.cluster_name})
        return True

    async def _run(self, flow: Flow) -> None:
        try:
            await flow.run(self.persist_state)
        except FlowError as e:
            self.log.error("Flow failed", extra={"flow": flow.name, "error": str(e)})
            try:
                await self.persist_state()
            except Exception as persist_error:
                self.log.error(
                    "Failed to persist state after flow failure",
                    extra={"flow": flow.name, "error": str(persist_error)},
                )
            raise causes(e) from None

    async def persist_state(self) -> None:
        await self.store.patch_status_and_state(None, self.flow_state().to_payload())

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def build_reconcile_graph(self) -> Graph:
        c = self.ensurer
        create_timeout = timeout(self.config.create_timeout_seconds)
        fctx = BasicFlowContext().with_span().with_logger(self.log)
        g = Graph(RECONCILE_FLOW_NAME)

        fctx.add_task(
            g,
            "ensure service account",
            c.ensure_service_account,
            create_timeout,
            do_if(self.config.create_service_account),
        )
        ensure_vpc = fctx.add_task(g, "ensure VPC", c.ensure_vpc, create_timeout)
        ensure_subnet = fctx.add_task(
            g, "ensure worker subnet", c.ensure_subnet, create_timeout, dependencies(ensure_vpc)
        )
        ensure_internal_subnet = fctx.add_task(
            g,
            "ensure internal subnet",
            c.ensure_internal_subnet,
            create_timeout,
            dependencies(ensure_vpc),
        )
        ensure_router = fctx.add_task(
            g, "ensure router", c.ensure_cloud_router, create_timeout, dependencies(ensure_vpc)
        )
        ensure_addresses = fctx.add_task(
            g,
            "ensure IP addresses",
            c.ensure_addresses,
            create_timeout,
            do_if(bool(self.infra.nat_ip_names)),
        )
        fctx.add_task(
            g,
            "ensure nats",
            c.ensure_cloud_nat,
            create_timeout,
            dependencies(ensure_router, ensure_subnet, ensure_addresses),
        )
        fctx.add_task(
            g,
            "ensure firewall",
            c.ensure_firewall_rules,
            create_timeout,
            dependencies(ensure_vpc, ensure_subnet, ensure_internal_subnet),
        )
        return g

    def build_delete_graph(self) -> Graph:
        c = self.ensurer
        delete_timeout = timeout(self.config.delete_timeout_seconds)
        fctx = BasicFlowContext().with_logger(self.log).with_span()
        g = Graph(DELETE_FLOW_NAME)

        fctx.add_task(g, "destroy service account", c.ensure_service_account_deleted, delete_timeout)
        fctx.add_task(
            g, "destroy kubernetes routes", c.ensure_kubernetes_routes_deleted, delete_timeout
        )
        firewall_deleted = fctx.add_task(
            g,
            "destroy infrastructure firewall",
            c.ensure_firewall_rules_deleted,
            timeout(self.config.firewall_delete_timeout_seconds),
        )
        nat_deleted = fctx.add_task(
            g,
            "destroy nats",
            c.ensure_cloud_nat_deleted,
            delete_timeout,
            do_if(self.infra.is_user_router),
        )
        internal_subnet_deleted = fctx.add_task(
            g, "destroy internal subnet", c.ensure_internal_subnet_deleted, delete_timeout
        )
        router_deleted = fctx.add_task(
            g,
            "ensure router deleted",
            c.ensure_cloud_router_deleted,
            delete_timeout,
            dependencies(nat_deleted),
            do_if(not self.infra.is_user_router),
        )
        subnet_deleted = fctx.add_task(
            g,
            "destroy worker subnet",
            c.ensure_subnet_deleted,
            delete_timeout,
            dependencies(router_deleted),
        )
        fctx.add_task(
            g,
            "destroy vpc",
            c.ensure_vpc_deleted,
            delete_timeout,
            dependencies(subnet_deleted, internal_subnet_deleted, router_deleted, firewall_deleted),
            do_if(not self.infra.is_user_vpc),
        )
        return g

    # ------------------------------------------------------------------
    # Status and state
    # ------------------------------------------------------------------

    def compute_status(self) -> InfrastructureStatus:
        wb = self.whiteboard
        networks = NetworkStatus()

        vpc = wb.get_object_as(OBJECT_KEY_VPC, Network)
        if vpc is not None:
            networks.vpc = VPC(name=vpc.name)

        router = wb.get_object_as(OBJECT_KEY_ROUTER, Router)
        if router is not None:
            networks.vpc.cloud_router = CloudRouter(name=router.name)

        nodes_subnet = wb.get_object_as(OBJECT_KEY_NODE_SUBNET, Subnetwork)
        if nodes_subnet is not None:
            networks.subnets.append(SubnetStatus(name=nodes_subnet.name, purpose=PURPOSE_NODES))
        internal_subnet = wb.get_object_as(OBJECT_KEY_INTERNAL_SUBNET, Subnetwork)
        if internal_subnet is not None:
            networks.subnets.append(
                SubnetStatus(name=internal_subnet.name, purpose=PURPOSE_INTERNAL)
            )

        addresses: list[Address] = wb.get_object_as(OBJECT_KEY_IP_ADDRESSES, list) or []
        networks.nat_ips = [NatIPStatus(ip=a.address) for a in addresses if a.address]

        status = InfrastructureStatus(
            networks=networks,
            service_account_email=wb.get_child(CHILD_IDS).get(KEY_SERVICE_ACCOUNT_EMAIL) or "",
            egress_cidrs=[f"{ip.ip}/32" for ip in networks.nat_ips],
        )

        ranges = self.infra.networking
        networking = NetworkingStatus(
            nodes=[ranges.nodes] if ranges.nodes else [],
            pods=[ranges.pods] if ranges.pods else [],
            services=[ranges.services] if ranges.services else [],
        )
        ipv6 = nodes_subnet.ipv6_cidr_range if nodes_subnet is not None else None
        if ipv6:
            networking.nodes.append(ipv6)
            networking.pods.append(ipv6)
            status.egress_cidrs.append(ipv6)
        status.networking = networking
        return status

    def flow_state(self) -> FlowState:
        routes: list[RouteEntry] = self.whiteboard.get_object_as(OBJECT_KEY_ROUTES, list) or []
        return FlowState(data=self.whiteboard.export_flat(), routes=routes)
