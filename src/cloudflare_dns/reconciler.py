"""Diff-and-apply engine.

For one object per trigger, compares the desired state derived from its
annotations against the applied snapshot stored on it, performs the minimal
set of Cloudflare operations, and writes a new snapshot back only when the
provider was actually changed.

External records (the public hostnames, optionally behind an origin record)
and internal records are two independent phases of one pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, List, Optional, Tuple

import requests
from kubernetes.client import ApiException

from cloudflare_dns.cloudflare import CloudflareClient, CloudflareError, RecordNotFoundError
from cloudflare_dns.kube import ResourceKind, describe
from cloudflare_dns.metrics import MetricsSink, NullMetrics
from cloudflare_dns.state import (
    ANNOTATION_STATE,
    AnnotationKeys,
    DNSState,
    decode_state,
    encode_state,
    extract_desired_state,
    is_valid_hostname,
)

logger = logging.getLogger(__name__)

PROVIDER_ERRORS = (CloudflareError, requests.exceptions.RequestException)

# =============================================================================
# Enums and Results
# =============================================================================


class PassStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PARTIAL = "partial"


class PhaseStatus(Enum):
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass(frozen=True)
class PhaseResult:
    status: PhaseStatus
    error: Optional[Exception] = None

    @property
    def changed(self) -> bool:
        return self.status == PhaseStatus.APPLIED

    @property
    def failed(self) -> bool:
        return self.status == PhaseStatus.FAILED


@dataclass
class ReconcileResult:
    kind: str
    namespace: str
    name: str
    status: PassStatus
    external: PhaseResult = PhaseResult(PhaseStatus.SKIPPED)
    internal: PhaseResult = PhaseResult(PhaseStatus.SKIPPED)
    state_updated: bool = False
    errors: List[str] = field(default_factory=list)


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        *,
        dns_client: CloudflareClient,
        metrics: Optional[MetricsSink] = None,
        annotation_keys: AnnotationKeys = AnnotationKeys(),
    ):
        self.dns_client = dns_client
        self.metrics = metrics or NullMetrics()
        self.keys = annotation_keys

    def desired_state(self, kind: ResourceKind, obj: Any) -> DNSState:
        return extract_desired_state(
            kind.annotations(obj),
            ip_address=kind.external_ip(obj),
            internal_ip_address=kind.internal_ip(obj),
            keys=self.keys,
        )

    def applied_state(self, kind: ResourceKind, obj: Any) -> DNSState:
        return decode_state(self.keys.lookup(kind.annotations(obj), ANNOTATION_STATE, ""))

    def _record(self, kind: ResourceKind, result: ReconcileResult, initiator: str) -> ReconcileResult:
        self.metrics.record_reconciliation(
            result.namespace, result.status.value, initiator, kind.name
        )
        return result

    # -------------------------------------------------------------------------
    # Add / modify
    # -------------------------------------------------------------------------

    def reconcile(self, kind: ResourceKind, obj: Any, initiator: str = "poller") -> ReconcileResult:
        """Run one reconciliation pass for an added, modified or listed object."""
        ref = f"{kind.name} {describe(obj)}"
        desired = self.desired_state(kind, obj)
        applied = self.applied_state(kind, obj)

        result = ReconcileResult(
            kind=kind.name,
            namespace=obj.metadata.namespace or "",
            name=obj.metadata.name or "",
            status=PassStatus.SKIPPED,
        )
        result.external = self._sync_external(ref, desired, applied)
        result.internal = self._sync_internal(ref, desired, applied)
        for phase in (result.external, result.internal):
            if phase.error is not None:
                result.errors.append(str(phase.error))

        if result.external.changed or result.internal.changed:
            new_state = self._next_applied_state(desired, applied, result.external, result.internal)
            kind.set_annotation(obj, self.keys.state, encode_state(new_state))
            logger.info(f"Updating {ref} because state has changed")
            try:
                kind.update(obj)
                result.state_updated = True
            except ApiException as e:
                logger.error(f"Failed to store state annotation on {ref}: {e.status} {e.reason}")
                result.errors.append(f"state update failed: {e.status} {e.reason}")

        if result.errors:
            result.status = PassStatus.FAILED
        elif result.state_updated:
            result.status = PassStatus.SUCCEEDED
        else:
            result.status = PassStatus.SKIPPED

        logger.debug(
            f"Reconciled {ref}: {result.status.value} "
            f"(external {result.external.status.value}, internal {result.internal.status.value})"
        )
        return self._record(kind, result, initiator)

    def _sync_external(self, ref: str, desired: DNSState, applied: DNSState) -> PhaseResult:
        if not desired.manages_external():
            return PhaseResult(PhaseStatus.SKIPPED)
        if desired.external_fields() == applied.external_fields():
            logger.debug(f"Skip updating external dns records for {ref} because state hasn't changed")
            return PhaseResult(PhaseStatus.UNCHANGED)

        try:
            if desired.origin_active:
                logger.info(
                    f"Upserting origin dns record {desired.origin_record_hostname} (A) -> {desired.ip_address} for {ref}"
                )
                self.dns_client.upsert_record(
                    "A", desired.origin_record_hostname, desired.ip_address, False
                )

            for hostname in desired.hostnames:
                if not is_valid_hostname(hostname):
                    logger.warning(f"Skipping invalid hostname '{hostname}' on {ref}")
                    continue
                if desired.origin_active:
                    logger.info(
                        f"Upserting dns record {hostname} (CNAME) -> {desired.origin_record_hostname} for {ref}"
                    )
                    self.dns_client.upsert_record(
                        "CNAME", hostname, desired.origin_record_hostname, desired.proxy
                    )
                else:
                    logger.info(f"Upserting dns record {hostname} (A) -> {desired.ip_address} for {ref}")
                    self.dns_client.upsert_record("A", hostname, desired.ip_address, desired.proxy)
                self.dns_client.update_proxy_setting(hostname, desired.proxy)
        except PROVIDER_ERRORS as e:
            logger.error(f"Failed updating external dns records for {ref}: {e}")
            return PhaseResult(PhaseStatus.FAILED, e)

        for hostname, content in self._obsolete_origin_records(desired, applied):
            self._delete_best_effort(ref, hostname, "A", content)

        return PhaseResult(PhaseStatus.APPLIED)

    def _obsolete_origin_records(self, desired: DNSState, applied: DNSState) -> List[Tuple[str, str]]:
        """Origin records that were applied but are no longer the active origin."""
        if not applied.use_origin_record:
            return []
        keep = desired.origin_record_hostname if desired.origin_active else ""
        content = applied.ip_address or desired.ip_address
        obsolete: List[Tuple[str, str]] = []
        for hostname in (applied.origin_record_hostname, desired.origin_record_hostname):
            if hostname and hostname != keep and (hostname, content) not in obsolete:
                obsolete.append((hostname, content))
        return obsolete

    def _sync_internal(self, ref: str, desired: DNSState, applied: DNSState) -> PhaseResult:
        if not desired.manages_internal():
            return PhaseResult(PhaseStatus.SKIPPED)
        if desired.internal_fields() == applied.internal_fields():
            logger.debug(f"Skip updating internal dns records for {ref} because state hasn't changed")
            return PhaseResult(PhaseStatus.UNCHANGED)

        try:
            for hostname in desired.internal_hostnames:
                if not is_valid_hostname(hostname):
                    logger.warning(f"Skipping invalid internal hostname '{hostname}' on {ref}")
                    continue
                logger.info(
                    f"Upserting internal dns record {hostname} (A) -> {desired.internal_ip_address} for {ref}"
                )
                self.dns_client.upsert_record("A", hostname, desired.internal_ip_address, False)
        except PROVIDER_ERRORS as e:
            logger.error(f"Failed updating internal dns records for {ref}: {e}")
            return PhaseResult(PhaseStatus.FAILED, e)

        return PhaseResult(PhaseStatus.APPLIED)

    @staticmethod
    def _next_applied_state(
        desired: DNSState, applied: DNSState, external: PhaseResult, internal: PhaseResult
    ) -> DNSState:
        """Desired state, except that a failed phase keeps its previously applied fields."""
        state = desired
        if external.failed:
            state = replace(
                state,
                ip_address=applied.ip_address,
                hostnames=applied.hostnames,
                proxy=applied.proxy,
                use_origin_record=applied.use_origin_record,
                origin_record_hostname=applied.origin_record_hostname,
            )
        if internal.failed:
            state = replace(
                state,
                internal_ip_address=applied.internal_ip_address,
                internal_hostnames=applied.internal_hostnames,
            )
        return state

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, kind: ResourceKind, obj: Any, initiator: str = "watcher") -> ReconcileResult:
        """Tear down the records of a deleted object, continuing past failures."""
        ref = f"{kind.name} {describe(obj)}"
        desired = self.desired_state(kind, obj)
        applied = self.applied_state(kind, obj)
        result = ReconcileResult(
            kind=kind.name,
            namespace=obj.metadata.namespace or "",
            name=obj.metadata.name or "",
            status=PassStatus.SKIPPED,
        )

        targets = self._teardown_targets(desired, applied)
        if not targets:
            return self._record(kind, result, initiator)

        deleted = 0
        for hostname, record_type, content in targets:
            if not is_valid_hostname(hostname):
                logger.warning(f"Skipping invalid hostname '{hostname}' on deleted {ref}")
                continue
            removed, error = self._delete_best_effort(ref, hostname, record_type, content)
            if removed:
                deleted += 1
            if error is not None:
                result.errors.append(f"{hostname}: {error}")

        if not result.errors:
            result.status = PassStatus.SUCCEEDED if deleted else PassStatus.SKIPPED
        elif deleted:
            result.status = PassStatus.PARTIAL
        else:
            result.status = PassStatus.FAILED

        logger.info(f"Removed dns records of deleted {ref}: {result.status.value}")
        return self._record(kind, result, initiator)

    @staticmethod
    def _teardown_targets(desired: DNSState, applied: DNSState) -> List[Tuple[str, str, str]]:
        """(hostname, type, content) of every record the object is known to own."""
        if not desired.enabled:
            return []

        targets: List[Tuple[str, str, str]] = []
        ip_address = desired.ip_address or applied.ip_address
        if desired.hostnames:
            if desired.origin_active:
                for hostname in desired.hostnames:
                    targets.append((hostname, "CNAME", desired.origin_record_hostname))
            elif ip_address:
                for hostname in desired.hostnames:
                    targets.append((hostname, "A", ip_address))
        if desired.origin_active and ip_address:
            # after the CNAMEs that point at it
            targets.append((desired.origin_record_hostname, "A", ip_address))

        internal_ip_address = desired.internal_ip_address or applied.internal_ip_address
        if internal_ip_address:
            for hostname in desired.internal_hostnames:
                targets.append((hostname, "A", internal_ip_address))
        return targets

    def _delete_best_effort(
        self, ref: str, hostname: str, record_type: str, content: str
    ) -> Tuple[bool, Optional[Exception]]:
        """Returns (deleted, error); a record that is already gone is neither."""
        try:
            self.dns_client.delete_record_if_matching(hostname, record_type, content)
            logger.info(f"Deleted dns record {hostname} ({record_type}) -> {content} for {ref}")
            return True, None
        except RecordNotFoundError as e:
            logger.info(f"Dns record {hostname} for {ref} is already gone: {e}")
            return False, None
        except PROVIDER_ERRORS as e:
            logger.warning(f"Failed deleting dns record {hostname} for {ref}: {e}")
            return False, e
