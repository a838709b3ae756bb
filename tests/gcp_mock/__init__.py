"""GCP API mock for integration testing.

In-memory implementations of the compute and IAM clients and of the
control-plane state store, so reconcile and delete flows run end to end
without network access.

Usage:
    from gcp_mock import MemoryStateStore, MockComputeClient, MockIAMClient

    compute = MockComputeClient()
    ctx = FlowContext(config=config, infra=infra, state=None, compute=compute,
                      iam=MockIAMClient(), store=MemoryStateStore())
    await ctx.reconcile()

    assert compute.calls_to("insert_network")
"""

from .compute import (
    Call,
    MemoryStateStore,
    MockComputeClient,
    MockComputeState,
    MockIAMClient,
)

__all__ = [
    "Call",
    "MemoryStateStore",
    "MockComputeClient",
    "MockComputeState",
    "MockIAMClient",
]
