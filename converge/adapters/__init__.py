"""
Provider adapters, one per resource kind.

- base: ResourceAdapter protocol and result types
- registry: AdapterRegistry for kind -> adapter lookup
- aws: Network, ComputeCluster, NodePool and Registry on AWS (boto3)
- kube: Release (helm) and Route (kubectl)
- memory: InMemoryAdapter for tests and rehearsal
"""

from .base import ProviderResult, ResourceAdapter, ResourceState, ResourceStatus
from .memory import InMemoryAdapter
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "InMemoryAdapter",
    "ProviderResult",
    "ResourceAdapter",
    "ResourceState",
    "ResourceStatus",
]
