"""
Adapter Registry for dispatching ops to the adapter for each resource kind.

The registry maps ResourceKind to its ResourceAdapter implementation,
providing a central lookup for the executor and the refresh step.
"""

from typing import TYPE_CHECKING, Optional

from converge.adapters.base import ResourceAdapter
from converge.schemas import ResourceKind

if TYPE_CHECKING:
    from converge.config import ConvergeConfig


class AdapterRegistry:
    """
    Registry for adapter lookup by resource kind.

    Usage:
        registry = AdapterRegistry()
        registry.register(ResourceKind.NETWORK, NetworkAdapter(clients))

        adapter = registry.get(ResourceKind.NETWORK)

        # Or use factory with defaults
        registry = AdapterRegistry.create_default(config)
    """

    def __init__(self) -> None:
        """Initialize an empty adapter registry."""
        self._adapters: dict[ResourceKind, ResourceAdapter] = {}

    def register(self, kind: ResourceKind, adapter: ResourceAdapter) -> None:
        """
        Register an adapter for a resource kind.

        Args:
            kind: Resource kind handled by the adapter
            adapter: Adapter instance
        """
        self._adapters[kind] = adapter

    def get(self, kind: ResourceKind) -> ResourceAdapter:
        """
        Get the adapter for a resource kind.

        Raises:
            KeyError: If no adapter registered for this kind
        """
        if kind not in self._adapters:
            registered = sorted(k.value for k in self._adapters)
            raise KeyError(
                f"No adapter registered for kind: {kind.value}. "
                f"Registered: {registered}"
            )
        return self._adapters[kind]

    def has(self, kind: ResourceKind) -> bool:
        return kind in self._adapters

    @classmethod
    def create_default(cls, config: Optional["ConvergeConfig"] = None) -> "AdapterRegistry":
        """
        Create a registry with the AWS and Kubernetes adapters.

        Args:
            config: Converge configuration (AWS region/endpoint, kube context)

        Returns:
            Configured AdapterRegistry
        """
        from converge.adapters.aws import (
            AwsClientFactory,
            ComputeClusterAdapter,
            NetworkAdapter,
            NodePoolAdapter,
            RegistryAdapter,
        )
        from converge.adapters.kube import CommandRunner, ReleaseAdapter, RouteAdapter

        aws = config.aws if config is not None else None
        kube = config.kube if config is not None else None

        clients = AwsClientFactory(
            region=aws.region if aws else None,
            endpoint_url=aws.endpoint_url if aws else None,
            profile=aws.profile if aws else None,
        )
        runner = CommandRunner(
            kube_context=kube.context if kube else None,
            timeout=kube.command_timeout if kube else 300,
        )

        registry = cls()
        registry.register(ResourceKind.NETWORK, NetworkAdapter(clients))
        registry.register(ResourceKind.COMPUTE_CLUSTER, ComputeClusterAdapter(clients))
        registry.register(ResourceKind.NODE_POOL, NodePoolAdapter(clients))
        registry.register(ResourceKind.REGISTRY, RegistryAdapter(clients))
        registry.register(ResourceKind.RELEASE, ReleaseAdapter(runner))
        registry.register(ResourceKind.ROUTE, RouteAdapter(runner))
        return registry

    @classmethod
    def create_in_memory(cls) -> "AdapterRegistry":
        """
        Create a registry with an InMemoryAdapter for every kind.

        Useful for testing and rehearsing a stack without touching providers.
        """
        from converge.adapters.memory import InMemoryAdapter

        registry = cls()
        for kind in ResourceKind:
            registry.register(kind, InMemoryAdapter(kind))
        return registry
