#!/usr/bin/env python3
"""kube-cloudflare-dns - Cloudflare DNS for Kubernetes services and ingresses

Watches Services and Ingresses annotated with ``<prefix>/cloudflare-dns: "true"``
and keeps Cloudflare DNS records for their hostnames pointed at the address the
object is exposed on. What was last applied is stored on the object itself in
the ``<prefix>/cloudflare-state`` annotation, so unchanged objects cost no API
calls.

Annotations (``<prefix>`` defaults to ``estafette.io``):

    <prefix>/cloudflare-dns                   "true" to manage records (default: false)
    <prefix>/cloudflare-hostnames             comma-separated external hostnames
    <prefix>/cloudflare-internal-hostnames    comma-separated hostnames for the cluster IP
    <prefix>/cloudflare-proxy                 "true" to proxy through Cloudflare (default: true)
    <prefix>/cloudflare-use-origin-record     "true" to CNAME hostnames to an origin record
    <prefix>/cloudflare-origin-record-hostname  hostname of the origin A record
    <prefix>/cloudflare-state                 written by this controller

See ``cloudflare_dns.config`` for the environment variables.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Any, List

from kubernetes import client, config as kube_config

from cloudflare_dns.cloudflare import CloudflareClient
from cloudflare_dns.config import Settings, load_settings, validate_settings
from cloudflare_dns.kube import create_resource_kinds
from cloudflare_dns.metrics import PrometheusMetrics
from cloudflare_dns.reconciler import Reconciler
from cloudflare_dns.sources import InFlightTracker, SweepLoop, WatchLoop
from cloudflare_dns.state import AnnotationKeys

logger = logging.getLogger("cloudflare_dns")

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_kube_config() -> None:
    """In-cluster service account first, local kubeconfig for development."""
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()


# =============================================================================
# Main
# =============================================================================


def build_reconciler(settings: Settings, metrics: PrometheusMetrics) -> Reconciler:
    dns_client = CloudflareClient(
        settings.cf_api_key, settings.cf_api_email, base_url=settings.cf_api_base_url
    )
    return Reconciler(
        dns_client=dns_client,
        metrics=metrics,
        annotation_keys=AnnotationKeys(
            prefix=settings.annotation_prefix, legacy_prefix=settings.legacy_annotation_prefix
        ),
    )


def main() -> None:
    """Main entry point."""
    settings = load_settings()
    setup_logging(settings.log_level)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        load_kube_config()
    except Exception as e:
        logger.error(f"Cannot configure Kubernetes client: {e}")
        sys.exit(1)

    metrics = PrometheusMetrics()
    reconciler = build_reconciler(settings, metrics)
    kinds = create_resource_kinds(
        list(settings.watch_kinds),
        client.CoreV1Api(),
        client.NetworkingV1Api(),
        namespace=settings.watch_namespace,
    )
    tracker = InFlightTracker()
    stop = threading.Event()

    logger.info(f"kube-cloudflare-dns: {', '.join(k.name for k in kinds)} -> Cloudflare")
    logger.info(f"Annotation prefix: {settings.annotation_prefix}")
    logger.info(f"Namespace: {settings.watch_namespace or 'all namespaces'}")
    logger.info(f"Sync mode: {settings.sync_mode}")

    sweeper = SweepLoop(
        kinds,
        reconciler,
        tracker,
        interval_seconds=settings.sweep_interval_seconds,
        stop_event=stop,
    )

    if settings.sync_mode == "once":
        sweeper.sweep_once()
        return

    metrics.serve(settings.metrics_listen_address)

    def request_shutdown(signum: int, _frame: Any) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down gracefully...")
        stop.set()

    signal.signal(signal.SIGTERM, request_shutdown)
    signal.signal(signal.SIGINT, request_shutdown)

    threads: List[threading.Thread] = [
        threading.Thread(target=sweeper.run, name="sweep", daemon=True)
    ]
    for kind in kinds:
        watcher = WatchLoop(
            kind,
            reconciler,
            tracker,
            backoff_seconds=settings.watch_backoff_seconds,
            timeout_seconds=settings.watch_timeout_seconds,
            stop_event=stop,
        )
        threads.append(threading.Thread(target=watcher.run, name=f"watch-{kind.name}", daemon=True))

    for thread in threads:
        thread.start()

    stop.wait()

    logger.info(f"Waiting for {tracker.count} in-flight reconciliation(s) to finish...")
    if not tracker.wait_idle(timeout=settings.shutdown_timeout_seconds):
        logger.warning("Timed out waiting for in-flight reconciliations")
    logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
