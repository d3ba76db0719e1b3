"""Desired and applied DNS state for a watched object.

The desired state is derived from the object's annotations on every pass; the
applied state is the snapshot this controller last wrote back into the
``<prefix>/cloudflare-state`` annotation.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_ANNOTATION_PREFIX = "estafette.io"
DEFAULT_LEGACY_ANNOTATION_PREFIX = "travix.io/kube-"

# Annotation suffixes, appended to "<prefix>/" (or "<legacy prefix>")
ANNOTATION_DNS = "cloudflare-dns"
ANNOTATION_HOSTNAMES = "cloudflare-hostnames"
ANNOTATION_INTERNAL_HOSTNAMES = "cloudflare-internal-hostnames"
ANNOTATION_PROXY = "cloudflare-proxy"
ANNOTATION_USE_ORIGIN_RECORD = "cloudflare-use-origin-record"
ANNOTATION_ORIGIN_RECORD_HOSTNAME = "cloudflare-origin-record-hostname"
ANNOTATION_STATE = "cloudflare-state"

MAX_LABEL_LENGTH = 63

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DNSState:
    """Normalized DNS configuration of one watched object.

    Used both for the desired state (with annotation defaults applied) and for
    the applied snapshot (zero value when nothing was ever applied).
    """

    enabled: bool = False
    hostnames: Tuple[str, ...] = ()
    internal_hostnames: Tuple[str, ...] = ()
    proxy: bool = False
    use_origin_record: bool = False
    origin_record_hostname: str = ""
    ip_address: str = ""
    internal_ip_address: str = ""

    @property
    def origin_active(self) -> bool:
        return self.use_origin_record and bool(self.origin_record_hostname)

    def manages_external(self) -> bool:
        return self.enabled and bool(self.hostnames) and bool(self.ip_address)

    def manages_internal(self) -> bool:
        return self.enabled and bool(self.internal_hostnames) and bool(self.internal_ip_address)

    def external_fields(self) -> Tuple[Any, ...]:
        return (
            self.ip_address,
            self.hostnames,
            self.proxy,
            self.use_origin_record,
            self.origin_record_hostname,
        )

    def internal_fields(self) -> Tuple[Any, ...]:
        return (self.internal_ip_address, self.internal_hostnames)


@dataclass(frozen=True)
class AnnotationKeys:
    """Fully qualified annotation keys for a prefix, plus optional legacy aliases."""

    prefix: str = DEFAULT_ANNOTATION_PREFIX
    legacy_prefix: str = DEFAULT_LEGACY_ANNOTATION_PREFIX

    def key(self, suffix: str) -> str:
        return f"{self.prefix}/{suffix}"

    def legacy_key(self, suffix: str) -> str:
        return f"{self.legacy_prefix}{suffix}" if self.legacy_prefix else ""

    @property
    def state(self) -> str:
        return self.key(ANNOTATION_STATE)

    def lookup(self, annotations: Dict[str, str], suffix: str, default: str) -> str:
        """Read an annotation, falling back to its legacy alias, then ``default``."""
        if self.key(suffix) in annotations:
            return annotations[self.key(suffix)]
        legacy = self.legacy_key(suffix)
        if legacy and legacy in annotations:
            return annotations[legacy]
        return default


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def split_hostnames(value: Any) -> Tuple[str, ...]:
    """Split a comma-separated hostname list, keeping order and dropping blanks."""
    if not value:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return tuple(h.strip() for h in items if h.strip())


def is_valid_hostname(hostname: str) -> bool:
    """At least two labels, none longer than 63 characters."""
    labels = hostname.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= MAX_LABEL_LENGTH for label in labels)


# =============================================================================
# Desired-State Extractor
# =============================================================================


def extract_desired_state(
    annotations: Optional[Dict[str, str]],
    ip_address: str = "",
    internal_ip_address: str = "",
    keys: AnnotationKeys = AnnotationKeys(),
) -> DNSState:
    """Build the desired state from annotations and the object's addresses."""
    annotations = annotations or {}
    return DNSState(
        enabled=_parse_bool(keys.lookup(annotations, ANNOTATION_DNS, "false")),
        hostnames=split_hostnames(keys.lookup(annotations, ANNOTATION_HOSTNAMES, "")),
        internal_hostnames=split_hostnames(
            keys.lookup(annotations, ANNOTATION_INTERNAL_HOSTNAMES, "")
        ),
        proxy=_parse_bool(keys.lookup(annotations, ANNOTATION_PROXY, "true")),
        use_origin_record=_parse_bool(
            keys.lookup(annotations, ANNOTATION_USE_ORIGIN_RECORD, "false")
        ),
        origin_record_hostname=keys.lookup(
            annotations, ANNOTATION_ORIGIN_RECORD_HOSTNAME, ""
        ).strip(),
        ip_address=ip_address or "",
        internal_ip_address=internal_ip_address or "",
    )


# =============================================================================
# State Codec
# =============================================================================


def encode_state(state: DNSState) -> str:
    """Serialize to the string-valued JSON layout stored in the state annotation."""
    return json.dumps(
        {
            "enabled": "true" if state.enabled else "false",
            "hostnames": ",".join(state.hostnames),
            "internalHostnames": ",".join(state.internal_hostnames),
            "proxy": "true" if state.proxy else "false",
            "useOriginRecord": "true" if state.use_origin_record else "false",
            "originRecordHostname": state.origin_record_hostname,
            "ipAddress": state.ip_address,
            "internalIpAddress": state.internal_ip_address,
        },
        sort_keys=True,
    )


def decode_state(value: Optional[str]) -> DNSState:
    """Parse a state annotation; missing or corrupt snapshots decode to the zero value."""
    if not value:
        return DNSState()
    try:
        data = json.loads(value)
    except ValueError as e:
        logger.warning(f"Ignoring unparseable state annotation: {e}")
        return DNSState()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring state annotation of type {type(data).__name__}")
        return DNSState()

    try:
        return DNSState(
            enabled=_parse_bool(data.get("enabled")),
            hostnames=split_hostnames(data.get("hostnames")),
            internal_hostnames=split_hostnames(data.get("internalHostnames")),
            proxy=_parse_bool(data.get("proxy")),
            use_origin_record=_parse_bool(data.get("useOriginRecord")),
            origin_record_hostname=str(data.get("originRecordHostname") or ""),
            # dnsContent is the field name older controller releases wrote
            ip_address=str(data.get("ipAddress") or data.get("dnsContent") or ""),
            internal_ip_address=str(data.get("internalIpAddress") or ""),
        )
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring malformed state annotation: {e}")
        return DNSState()
