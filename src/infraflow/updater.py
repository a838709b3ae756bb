"""Applies diff/upsert results through the compute client.

The updater is the only place where computed patches meet the remote API.
It is injected into the reconciliation context; tests substitute their own.
"""

from __future__ import annotations

import logging

from .client import ComputeClient
from .diff import (
    ExpandRange,
    PatchStep,
    firewall_update,
    nat_delete,
    nat_upsert,
    network_update,
    router_update,
    subnet_updates,
)
from .errors import OperationFailedError
from .resources import Firewall, Network, Router, RouterNat, Subnetwork

logger = logging.getLogger(__name__)


class Updater:
    """Updates existing resources toward their desired state."""

    def __init__(self, compute: ComputeClient) -> None:
        self._compute = compute

    async def vpc(self, desired: Network, current: Network) -> Network:
        patch = network_update(desired, current)
        if patch is None:
            return current
        logger.info("Updating VPC", extra={"vpc": current.name, "fields": patch.fields})
        return await self._compute.patch_network(current.name, patch)

    async def subnet(self, region: str, desired: Subnetwork, current: Subnetwork) -> Subnetwork:
        """Apply subnet update steps in order.

        Each patch carries the fingerprint of the latest result, since every
        step changes the fingerprint on the remote side.
        """
        for step in subnet_updates(desired, current):
            if isinstance(step, ExpandRange):
                logger.info(
                    "Expanding subnet range",
                    extra={
                        "subnet": current.name,
                        "from": current.ip_cidr_range,
                        "to": step.ip_cidr_range,
                    },
                )
                current = await self._compute.expand_subnet(region, current.name, step.ip_cidr_range)
            elif isinstance(step, PatchStep):
                logger.info(
                    "Updating subnet",
                    extra={"subnet": current.name, "fields": step.patch.fields},
                )
                current = await self._compute.patch_subnet(
                    region, current.name, step.patch.with_fingerprint(current.fingerprint)
                )
        return current

    async def router(self, region: str, desired: Router, current: Router) -> Router:
        patch = router_update(desired, current)
        if patch is None:
            return current
        logger.info("Updating router", extra={"router": current.name, "fields": patch.fields})
        return await self._compute.patch_router(region, current.name, patch)

    async def nat(
        self, region: str, router: Router, desired: RouterNat
    ) -> tuple[Router, RouterNat]:
        """Insert or replace the NAT entry on router.

        Raises:
            OperationFailedError: If the NAT is missing from the updated router.
        """
        patch = nat_upsert(router, desired)
        if patch is None:
            _, existing = router.find_nat(desired.name)
            return router, existing or desired

        logger.info("Updating router with NAT", extra={"router": router.name, "nat": desired.name})
        result = await self._compute.patch_router(region, router.name, patch)
        _, nat = result.find_nat(desired.name)
        if nat is None:
            raise OperationFailedError(
                router.name, [f"failed to locate NAT {desired.name} in router"]
            )
        return result, nat

    async def delete_nat(self, region: str, router_name: str, nat_name: str) -> Router | None:
        """Remove the NAT entry from a freshly fetched router.

        Returns None when the router does not exist.
        """
        router = await self._compute.get_router(region, router_name)
        if router is None:
            return None
        patch = nat_delete(router, nat_name)
        if patch is None:
            return router
        logger.info("Removing NAT from router", extra={"router": router_name, "nat": nat_name})
        return await self._compute.patch_router(region, router_name, patch)

    async def firewall(self, current: Firewall, desired: Firewall) -> Firewall:
        patch = firewall_update(current, desired)
        if patch is None:
            return current
        logger.info("Updating firewall rule", extra={"firewall": desired.name, "fields": patch.fields})
        return await self._compute.patch_firewall_rule(desired.name, patch)
