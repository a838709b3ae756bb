"""Compute and IAM clients for the remote API boundary.

The abstract clients define the operations the ensure functions need. The
Google implementations are built on google-api-python-client discovery
services; its request objects are synchronous, so every execute() runs in
the loop's default executor, each request on its own authorized transport.

Remote error mapping:
- get_* returns None when the resource does not exist
- patch_* treats 304 Not Modified as success
- delete_* treats 404 Not Found as success
- every other HTTP error raises RemoteAPIError

Insert, patch and delete wait for the remote operation to reach DONE before
returning.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import google.auth
import google_auth_httplib2
import httplib2
from google.oauth2 import service_account
from googleapiclient import discovery
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest

from .config import Config
from .errors import OperationFailedError, RemoteAPIError, from_http_error
from .patch import Patch
from .resources import (
    Address,
    Firewall,
    Network,
    Route,
    Router,
    ServiceAccount,
    Subnetwork,
    last_segment,
)

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

OPERATION_DONE = "DONE"

SERVICE_ACCOUNT_ID_PATTERN = re.compile(r"^projects/[^/]+/serviceAccounts/.+$")


@dataclass
class FirewallListOpts:
    """List options for firewall rules.

    Attributes:
        filter: Server-side filter expression
        predicate: Client-side filter applied to every fetched rule
    """

    filter: str | None = None
    predicate: Callable[[Firewall], bool] | None = None


@dataclass
class RouteListOpts:
    """List options for routes.

    Attributes:
        filter: Server-side filter expression
        predicate: Client-side filter applied to every fetched route
    """

    filter: str | None = None
    predicate: Callable[[Route], bool] | None = None


async def wait_for_operation(
    query: Callable[[dict[str, Any]], Awaitable[dict[str, Any]]],
    operation: dict[str, Any],
    poll_interval: float,
) -> dict[str, Any]:
    """Poll an operation until it is DONE.

    Queries immediately, then every poll_interval seconds. The sleep is a
    plain asyncio.sleep so cancelling the calling task stops polling at once.

    Raises:
        OperationFailedError: If the operation finishes with errors.
    """
    name = operation.get("name", "")
    while True:
        result = await query(operation)
        if result.get("status") == OPERATION_DONE:
            errors = (result.get("error") or {}).get("errors") or []
            if errors:
                raise OperationFailedError(
                    name, [e.get("message", "") or e.get("code", "") for e in errors]
                )
            return result
        logger.debug(
            "Operation still running",
            extra={"operation": name, "status": result.get("status")},
        )
        await asyncio.sleep(poll_interval)


class ComputeClient(ABC):
    """Compute API operations used by the ensure functions."""

    # Networks
    @abstractmethod
    async def get_network(self, name: str) -> Network | None: ...

    @abstractmethod
    async def insert_network(self, network: Network) -> Network: ...

    @abstractmethod
    async def patch_network(self, name: str, patch: Patch) -> Network: ...

    @abstractmethod
    async def delete_network(self, name: str) -> None: ...

    # Subnetworks
    @abstractmethod
    async def get_subnet(self, region: str, name: str) -> Subnetwork | None: ...

    @abstractmethod
    async def insert_subnet(self, region: str, subnet: Subnetwork) -> Subnetwork: ...

    @abstractmethod
    async def patch_subnet(self, region: str, name: str, patch: Patch) -> Subnetwork: ...

    @abstractmethod
    async def expand_subnet(self, region: str, name: str, cidr: str) -> Subnetwork: ...

    @abstractmethod
    async def delete_subnet(self, region: str, name: str) -> None: ...

    # Routers
    @abstractmethod
    async def get_router(self, region: str, name: str) -> Router | None: ...

    @abstractmethod
    async def insert_router(self, region: str, router: Router) -> Router: ...

    @abstractmethod
    async def patch_router(self, region: str, name: str, patch: Patch) -> Router: ...

    @abstractmethod
    async def delete_router(self, region: str, name: str) -> None: ...

    # Addresses
    @abstractmethod
    async def get_address(self, region: str, name: str) -> Address | None: ...

    # Firewalls
    @abstractmethod
    async def get_firewall_rule(self, name: str) -> Firewall | None: ...

    @abstractmethod
    async def insert_firewall_rule(self, firewall: Firewall) -> Firewall: ...

    @abstractmethod
    async def patch_firewall_rule(self, name: str, patch: Patch) -> Firewall: ...

    @abstractmethod
    async def delete_firewall_rule(self, name: str) -> None: ...

    @abstractmethod
    async def list_firewall_rules(self, opts: FirewallListOpts) -> list[Firewall]: ...

    # Routes
    @abstractmethod
    async def list_routes(self, opts: RouteListOpts) -> list[Route]: ...

    @abstractmethod
    async def delete_route(self, name: str) -> None: ...


class IAMClient(ABC):
    """IAM service account operations."""

    @abstractmethod
    async def get_service_account(self, name: str) -> ServiceAccount | None: ...

    @abstractmethod
    async def create_service_account(self, account_id: str) -> ServiceAccount: ...

    @abstractmethod
    async def delete_service_account(self, name: str) -> None: ...


async def _execute(request: Any) -> Any:
    """Run a discovery request in the default executor, mapping HTTP errors."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, request.execute)
    except HttpError as e:
        raise from_http_error(e) from e


class GoogleComputeClient(ComputeClient):
    """ComputeClient backed by the compute v1 discovery service."""

    def __init__(
        self,
        service: Any,
        project_id: str,
        poll_interval: float,
    ) -> None:
        self._service = service
        self._project = project_id
        self._poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _query_operation(self, op: dict[str, Any]) -> dict[str, Any]:
        if op.get("zone"):
            request = self._service.zoneOperations().get(
                project=self._project, zone=last_segment(op["zone"]), operation=op["name"]
            )
        elif op.get("region"):
            request = self._service.regionOperations().get(
                project=self._project, region=last_segment(op["region"]), operation=op["name"]
            )
        else:
            request = self._service.globalOperations().get(
                project=self._project, operation=op["name"]
            )
        return await _execute(request)

    async def _run(self, request: Any) -> dict[str, Any]:
        op = await _execute(request)
        return await wait_for_operation(self._query_operation, op, self._poll_interval)

    async def _get(self, request: Any) -> dict[str, Any] | None:
        try:
            return await _execute(request)
        except RemoteAPIError as e:
            if e.is_not_found:
                return None
            raise

    async def _patch(self, request: Any) -> bool:
        """Run a patch; False when the server reports nothing was modified."""
        try:
            await self._run(request)
        except RemoteAPIError as e:
            if e.is_not_modified:
                logger.debug("Patch reported not modified")
                return False
            raise
        return True

    async def _delete(self, request: Any) -> None:
        try:
            await self._run(request)
        except RemoteAPIError as e:
            if e.is_not_found:
                return
            raise

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    async def get_network(self, name: str) -> Network | None:
        data = await self._get(self._service.networks().get(project=self._project, network=name))
        return Network.from_api(data) if data else None

    async def insert_network(self, network: Network) -> Network:
        await self._run(
            self._service.networks().insert(project=self._project, body=network.to_api())
        )
        return await self._must_get(self.get_network(network.name), network.name)

    async def patch_network(self, name: str, patch: Patch) -> Network:
        await self._patch(
            self._service.networks().patch(project=self._project, network=name, body=patch.to_api())
        )
        return await self._must_get(self.get_network(name), name)

    async def delete_network(self, name: str) -> None:
        await self._delete(self._service.networks().delete(project=self._project, network=name))

    # ------------------------------------------------------------------
    # Subnetworks
    # ------------------------------------------------------------------

    async def get_subnet(self, region: str, name: str) -> Subnetwork | None:
        data = await self._get(
            self._service.subnetworks().get(
                project=self._project, region=region, subnetwork=name
            )
        )
        return Subnetwork.from_api(data) if data else None

    async def insert_subnet(self, region: str, subnet: Subnetwork) -> Subnetwork:
        await self._run(
            self._service.subnetworks().insert(
                project=self._project, region=region, body=subnet.to_api()
            )
        )
        return await self._must_get(self.get_subnet(region, subnet.name), subnet.name)

    async def patch_subnet(self, region: str, name: str, patch: Patch) -> Subnetwork:
        await self._patch(
            self._service.subnetworks().patch(
                project=self._project, region=region, subnetwork=name, body=patch.to_api()
            )
        )
        return await self._must_get(self.get_subnet(region, name), name)

    async def expand_subnet(self, region: str, name: str, cidr: str) -> Subnetwork:
        await self._run(
            self._service.subnetworks().expandIpCidrRange(
                project=self._project,
                region=region,
                subnetwork=name,
                body={"ipCidrRange": cidr},
            )
        )
        return await self._must_get(self.get_subnet(region, name), name)

    async def delete_subnet(self, region: str, name: str) -> None:
        await self._delete(
            self._service.subnetworks().delete(
                project=self._project, region=region, subnetwork=name
            )
        )

    # ------------------------------------------------------------------
    # Routers
    # ------------------------------------------------------------------

    async def get_router(self, region: str, name: str) -> Router | None:
        data = await self._get(
            self._service.routers().get(project=self._project, region=region, router=name)
        )
        return Router.from_api(data) if data else None

    async def insert_router(self, region: str, router: Router) -> Router:
        await self._run(
            self._service.routers().insert(
                project=self._project, region=region, body=router.to_api()
            )
        )
        return await self._must_get(self.get_router(region, router.name), router.name)

    async def patch_router(self, region: str, name: str, patch: Patch) -> Router:
        await self._patch(
            self._service.routers().patch(
                project=self._project, region=region, router=name, body=patch.to_api()
            )
        )
        return await self._must_get(self.get_router(region, name), name)

    async def delete_router(self, region: str, name: str) -> None:
        await self._delete(
            self._service.routers().delete(project=self._project, region=region, router=name)
        )

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    async def get_address(self, region: str, name: str) -> Address | None:
        data = await self._get(
            self._service.addresses().get(project=self._project, region=region, address=name)
        )
        return Address.from_api(data) if data else None

    # ------------------------------------------------------------------
    # Firewalls
    # ------------------------------------------------------------------

    async def get_firewall_rule(self, name: str) -> Firewall | None:
        data = await self._get(
            self._service.firewalls().get(project=self._project, firewall=name)
        )
        return Firewall.from_api(data) if data else None

    async def insert_firewall_rule(self, firewall: Firewall) -> Firewall:
        await self._run(
            self._service.firewalls().insert(project=self._project, body=firewall.to_api())
        )
        return await self._must_get(self.get_firewall_rule(firewall.name), firewall.name)

    async def patch_firewall_rule(self, name: str, patch: Patch) -> Firewall:
        await self._patch(
            self._service.firewalls().patch(
                project=self._project, firewall=name, body=patch.to_api()
            )
        )
        return await self._must_get(self.get_firewall_rule(name), name)

    async def delete_firewall_rule(self, name: str) -> None:
        await self._delete(self._service.firewalls().delete(project=self._project, firewall=name))

    async def list_firewall_rules(self, opts: FirewallListOpts) -> list[Firewall]:
        items = await self._list_all(self._service.firewalls(), opts.filter)
        rules = [Firewall.from_api(item) for item in items]
        if opts.predicate is not None:
            rules = [r for r in rules if opts.predicate(r)]
        return rules

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def list_routes(self, opts: RouteListOpts) -> list[Route]:
        items = await self._list_all(self._service.routes(), opts.filter)
        routes = [Route.from_api(item) for item in items]
        if opts.predicate is not None:
            routes = [r for r in routes if opts.predicate(r)]
        return routes

    async def delete_route(self, name: str) -> None:
        await self._delete(self._service.routes().delete(project=self._project, route=name))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _list_all(self, collection: Any, filter_expr: str | None) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"project": self._project}
        if filter_expr:
            kwargs["filter"] = filter_expr
        request = collection.list(**kwargs)
        items: list[dict[str, Any]] = []
        while request is not None:
            response = await _execute(request)
            items.extend(response.get("items", []))
            request = collection.list_next(previous_request=request, previous_response=response)
        return items

    @staticmethod
    async def _must_get(getter: Awaitable[Any], name: str) -> Any:
        result = await getter
        if result is None:
            raise OperationFailedError(name, [f"resource {name} not found after operation"])
        return result


class GoogleIAMClient(IAMClient):
    """IAMClient backed by the iam v1 discovery service."""

    def __init__(self, service: Any, project_id: str) -> None:
        self._service = service
        self._project = project_id

    def _resource_name(self, name: str) -> str:
        if SERVICE_ACCOUNT_ID_PATTERN.match(name):
            return name
        return (
            f"projects/{self._project}/serviceAccounts/"
            f"{name}@{self._project}.iam.gserviceaccount.com"
        )

    async def get_service_account(self, name: str) -> ServiceAccount | None:
        request = self._service.projects().serviceAccounts().get(name=self._resource_name(name))
        try:
            data = await _execute(request)
        except RemoteAPIError as e:
            if e.is_not_found:
                return None
            raise
        return ServiceAccount.from_api(data)

    async def create_service_account(self, account_id: str) -> ServiceAccount:
        request = self._service.projects().serviceAccounts().create(
            name=f"projects/{self._project}",
            body={"accountId": account_id, "serviceAccount": {"displayName": account_id}},
        )
        return ServiceAccount.from_api(await _execute(request))

    async def delete_service_account(self, name: str) -> None:
        request = self._service.projects().serviceAccounts().delete(
            name=self._resource_name(name)
        )
        try:
            await _execute(request)
        except RemoteAPIError as e:
            if e.is_not_found:
                return
            raise


def load_credentials(config: Config) -> Any:
    """Load credentials from the key file or Application Default Credentials."""
    if config.credentials_file is not None:
        return service_account.Credentials.from_service_account_file(
            str(config.credentials_file), scopes=[CLOUD_PLATFORM_SCOPE]
        )
    credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    return credentials


def request_builder(credentials: Any) -> Callable[..., HttpRequest]:
    """Return a discovery requestBuilder giving every request its own transport.

    httplib2.Http is not thread-safe and requests execute on executor threads.
    """

    def build(http: Any, *args: Any, **kwargs: Any) -> HttpRequest:
        authorized = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http())
        return HttpRequest(authorized, *args, **kwargs)

    return build


def create_clients(config: Config) -> tuple[GoogleComputeClient, GoogleIAMClient]:
    """Build the compute and IAM clients for the configured project."""
    credentials = load_credentials(config)
    builder = request_builder(credentials)
    compute = discovery.build(
        "compute", "v1", credentials=credentials, requestBuilder=builder, cache_discovery=False
    )
    iam = discovery.build(
        "iam", "v1", credentials=credentials, requestBuilder=builder, cache_discovery=False
    )
    logger.info(
        "Created GCP clients",
        extra={"project_id": config.project_id, "region": config.region},
    )
    return (
        GoogleComputeClient(compute, config.project_id, config.poll_interval_seconds),
        GoogleIAMClient(iam, config.project_id),
    )
