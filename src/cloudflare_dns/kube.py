"""Kubernetes access for the watched kinds.

Each kind adapter exposes the handful of capabilities the controller needs:
list every object in scope, stream watch events, write an object back, and
read the addresses the object is exposed on.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List

from kubernetes import watch
from kubernetes.client import CoreV1Api, NetworkingV1Api

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = ("services", "ingresses")


def _first_ingress_ip(status: Any) -> str:
    load_balancer = getattr(status, "load_balancer", None) if status else None
    ingress = getattr(load_balancer, "ingress", None) if load_balancer else None
    if not ingress:
        return ""
    return getattr(ingress[0], "ip", None) or ""


def describe(obj: Any) -> str:
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", "") or ""
    name = getattr(metadata, "name", "") or ""
    return f"{namespace}/{name}"


# =============================================================================
# Resource Kind Interface and Implementations
# =============================================================================


class ResourceKind(ABC):
    """Abstract base class for a watched Kubernetes kind."""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace

    @property
    @abstractmethod
    def name(self) -> str:
        """Kind name used in logs and metric labels."""
        pass

    @abstractmethod
    def _list_function(self) -> Callable[..., Any]:
        """API list function, also used as the watch source."""
        pass

    @abstractmethod
    def _list_kwargs(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update(self, obj: Any) -> Any:
        """Write the object back, carrying its resourceVersion."""
        pass

    @abstractmethod
    def external_ip(self, obj: Any) -> str:
        pass

    def internal_ip(self, obj: Any) -> str:
        return ""

    def annotations(self, obj: Any) -> Dict[str, str]:
        metadata = getattr(obj, "metadata", None)
        return dict(getattr(metadata, "annotations", None) or {})

    def set_annotation(self, obj: Any, key: str, value: str) -> None:
        if obj.metadata.annotations is None:
            obj.metadata.annotations = {}
        obj.metadata.annotations[key] = value

    def list_objects(self) -> List[Any]:
        result = self._list_function()(**self._list_kwargs())
        return list(result.items or [])

    def watch(self, timeout_seconds: int) -> Iterator[Dict[str, Any]]:
        """Yield raw watch events until the server closes the stream."""
        watcher = watch.Watch()
        try:
            yield from watcher.stream(
                self._list_function(), timeout_seconds=timeout_seconds, **self._list_kwargs()
            )
        finally:
            watcher.stop()


class ServiceKind(ResourceKind):
    """Services; only type LoadBalancer qualifies for an external address."""

    def __init__(self, core_api: CoreV1Api, namespace: str = ""):
        super().__init__(namespace)
        self._api = core_api

    @property
    def name(self) -> str:
        return "service"

    def _list_function(self) -> Callable[..., Any]:
        if self.namespace:
            return self._api.list_namespaced_service
        return self._api.list_service_for_all_namespaces

    def _list_kwargs(self) -> Dict[str, Any]:
        return {"namespace": self.namespace} if self.namespace else {}

    def update(self, obj: Any) -> Any:
        return self._api.replace_namespaced_service(
            name=obj.metadata.name, namespace=obj.metadata.namespace, body=obj
        )

    def external_ip(self, obj: Any) -> str:
        spec = getattr(obj, "spec", None)
        if getattr(spec, "type", None) != "LoadBalancer":
            return ""
        return _first_ingress_ip(getattr(obj, "status", None))

    def internal_ip(self, obj: Any) -> str:
        cluster_ip = getattr(getattr(obj, "spec", None), "cluster_ip", None) or ""
        # Headless services report the literal "None"
        if cluster_ip == "None":
            return ""
        return cluster_ip


class IngressKind(ResourceKind):
    """networking.k8s.io/v1 Ingresses."""

    def __init__(self, networking_api: NetworkingV1Api, namespace: str = ""):
        super().__init__(namespace)
        self._api = networking_api

    @property
    def name(self) -> str:
        return "ingress"

    def _list_function(self) -> Callable[..., Any]:
        if self.namespace:
            return self._api.list_namespaced_ingress
        return self._api.list_ingress_for_all_namespaces

    def _list_kwargs(self) -> Dict[str, Any]:
        return {"namespace": self.namespace} if self.namespace else {}

    def update(self, obj: Any) -> Any:
        return self._api.replace_namespaced_ingress(
            name=obj.metadata.name, namespace=obj.metadata.namespace, body=obj
        )

    def external_ip(self, obj: Any) -> str:
        return _first_ingress_ip(getattr(obj, "status", None))


def create_resource_kinds(
    kinds: List[str], core_api: CoreV1Api, networking_api: NetworkingV1Api, namespace: str = ""
) -> List[ResourceKind]:
    """Factory function to create adapters for the configured kinds."""
    result: List[ResourceKind] = []
    for kind in kinds:
        if kind == "services":
            result.append(ServiceKind(core_api, namespace))
        elif kind == "ingresses":
            result.append(IngressKind(networking_api, namespace))
        else:
            raise ValueError(
                f"Unsupported kind: '{kind}'. Supported kinds: {', '.join(SUPPORTED_KINDS)}"
            )
    return result
