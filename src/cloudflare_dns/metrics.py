"""Reconciliation metrics.

The reconciler reports through a :class:`MetricsSink` it is handed at
construction; the Prometheus implementation keeps its collectors on a private
registry so nothing is registered process-wide.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Tuple

from prometheus_client import CollectorRegistry, Counter, start_http_server

logger = logging.getLogger(__name__)


class MetricsSink(ABC):
    """Abstract base class for reconciliation metrics."""

    @abstractmethod
    def record_reconciliation(self, namespace: str, status: str, initiator: str, kind: str) -> None:
        pass


class NullMetrics(MetricsSink):
    def record_reconciliation(self, namespace: str, status: str, initiator: str, kind: str) -> None:
        pass


class PrometheusMetrics(MetricsSink):
    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.reconciliations = Counter(
            "cloudflare_dns_reconciliations",
            "Number of reconciliation passes per object, by outcome.",
            ["namespace", "status", "initiator", "type"],
            registry=self.registry,
        )

    def record_reconciliation(self, namespace: str, status: str, initiator: str, kind: str) -> None:
        self.reconciliations.labels(
            namespace=namespace, status=status, initiator=initiator, type=kind
        ).inc()

    def serve(self, listen_address: str) -> None:
        """Expose ``/metrics`` on ``host:port`` (``:9101`` binds all interfaces)."""
        host, port = parse_listen_address(listen_address)
        start_http_server(port, addr=host, registry=self.registry)
        logger.info(f"Serving Prometheus metrics at {host}:{port}/metrics")


def parse_listen_address(listen_address: str) -> Tuple[str, int]:
    host, sep, port = listen_address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address '{listen_address}', expected [host]:port")
    return host or "0.0.0.0", int(port)
