"""Minimal Cloudflare API v4 client.

Covers just what the controller needs: zone lookup by DNS name, record CRUD,
the type-safe upsert and the proxied flag toggle. Every response shares the
Cloudflare envelope::

    {"success": bool, "errors": [...], "messages": [...],
     "result": ..., "result_info": {"page", "per_page", "count", "total_count"}}

A ``success=false`` envelope raises :class:`CloudflareAPIError`; transport
failures surface as ``requests.exceptions.RequestException`` untouched. The
client never retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"

# =============================================================================
# Errors
# =============================================================================


class CloudflareError(Exception):
    """Base class for provider-reported and lookup failures."""


class CloudflareAPIError(CloudflareError):
    """The API answered with ``success: false``."""

    def __init__(self, action: str, errors: Any = None, messages: Any = None):
        self.action = action
        self.errors = errors or []
        self.messages = messages or []
        super().__init__(f"{action} failed | {self.errors} | {self.messages}")


class InvalidDNSNameError(CloudflareError):
    """The DNS name cannot be mapped onto a zone (too few labels)."""


class ZoneNotFoundError(CloudflareError):
    pass


class AmbiguousZoneError(CloudflareError):
    pass


class RecordNotFoundError(CloudflareError):
    pass


class AmbiguousRecordError(CloudflareError):
    pass


class RecordMismatchError(CloudflareError):
    """Guarded delete refused because the live record no longer matches."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Zone:
    id: str
    name: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Zone":
        return cls(id=str(data.get("id") or ""), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class DNSRecord:
    """A DNS record as returned by the dns_records endpoints."""

    id: str
    type: str
    name: str
    content: str
    proxiable: bool = False
    proxied: bool = False
    ttl: int = 1
    zone_id: str = ""
    zone_name: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any], zone: Optional[Zone] = None) -> "DNSRecord":
        return cls(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            name=str(data.get("name") or ""),
            content=str(data.get("content") or ""),
            proxiable=bool(data.get("proxiable", False)),
            proxied=bool(data.get("proxied", False)),
            ttl=int(data.get("ttl") or 1),
            zone_id=str(data.get("zone_id") or (zone.id if zone else "")),
            zone_name=str(data.get("zone_name") or (zone.name if zone else "")),
        )

    def to_api(self) -> Dict[str, Any]:
        """Body for a full-record PUT."""
        return {
            "type": self.type,
            "name": self.name,
            "content": self.content,
            "proxied": self.proxied,
            "ttl": self.ttl,
        }


@dataclass(frozen=True)
class ResultInfo:
    page: int = 1
    per_page: int = 20
    count: int = 0
    total_count: int = 0

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]], result_len: int) -> "ResultInfo":
        if not isinstance(data, dict):
            return cls(count=result_len, total_count=result_len, per_page=max(result_len, 20))
        return cls(
            page=int(data.get("page") or 1),
            per_page=int(data.get("per_page") or 20),
            count=int(data.get("count", result_len) or 0),
            total_count=int(data.get("total_count", result_len) or 0),
        )


# =============================================================================
# Helpers
# =============================================================================


def get_last_items(source: List[str], number_of_items: int) -> List[str]:
    """Return the last ``number_of_items`` entries of ``source``."""
    if not source:
        raise ValueError("source cannot be empty")
    if number_of_items > len(source):
        raise ValueError(
            f"number_of_items ({number_of_items}) is larger than number of items in source ({len(source)})"
        )
    return source[len(source) - number_of_items :]


def get_matching_zone(zones: List[Zone], zone_name: str) -> Zone:
    if not zones:
        raise ZoneNotFoundError("zones cannot be empty")
    for zone in zones:
        if zone.name == zone_name:
            return zone
    raise ZoneNotFoundError(f"no zone matches name {zone_name}")


# =============================================================================
# Client
# =============================================================================


class CloudflareClient:
    """Cloudflare API client authenticated with an API key and account email."""

    def __init__(self, api_key: str, api_email: str, base_url: str = DEFAULT_BASE_URL):
        self._base_url = base_url.rstrip("/")
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "X-Auth-Key": api_key,
                "X-Auth-Email": api_email,
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = self._session.request(
            method, f"{self._base_url}{path}", params=params, json=body
        )
        try:
            envelope = response.json()
        except ValueError:
            # Non-JSON bodies come from proxies or outages, not the API itself.
            response.raise_for_status()
            raise CloudflareAPIError(action, [f"unparseable response (HTTP {response.status_code})"])

        if not isinstance(envelope, dict) or not envelope.get("success"):
            envelope = envelope if isinstance(envelope, dict) else {}
            raise CloudflareAPIError(action, envelope.get("errors"), envelope.get("messages"))
        return envelope

    # -------------------------------------------------------------------------
    # Zones
    # -------------------------------------------------------------------------

    def _list_zones(self, zone_name: str) -> Tuple[List[Zone], ResultInfo]:
        envelope = self._request(
            "GET", "/zones", "Listing cloudflare zones", params={"name": zone_name}
        )
        result = envelope.get("result") or []
        zones = [Zone.from_api(z) for z in result if isinstance(z, dict)]
        return zones, ResultInfo.from_api(envelope.get("result_info"), len(zones))

    def resolve_zone(self, dns_name: str) -> Zone:
        """Find the zone for a DNS name, possibly including subdomains.

        Starts with the full name and drops the leftmost label until a lookup
        returns a match, which also handles suffixes like ``co.uk`` without a
        public suffix list. Only the first page of results is read.
        """
        parts = dns_name.split(".") if dns_name else []
        if len(parts) < 2:
            raise InvalidDNSNameError(
                f"dns name '{dns_name}' has too few parts, should at least have a tld and domain name"
            )

        number_of_items = len(parts)
        while number_of_items > 1:
            zone_name = ".".join(get_last_items(parts, number_of_items))
            zones, info = self._list_zones(zone_name)

            if info.total_count > info.per_page:
                raise AmbiguousZoneError(
                    f"{info.total_count} zones match '{zone_name}', more than a single page of {info.per_page}"
                )
            if info.count > 0:
                zone = get_matching_zone(zones, zone_name)
                logger.debug(f"Resolved zone for {dns_name}: {zone.name} ({zone.id})")
                return zone

            number_of_items -= 1

        raise ZoneNotFoundError(f"no matching zone has been found for '{dns_name}'")

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _list_records(self, zone: Zone, name: str) -> Tuple[List[DNSRecord], ResultInfo]:
        envelope = self._request(
            "GET",
            f"/zones/{zone.id}/dns_records",
            "Listing cloudflare dns records",
            params={"name": name},
        )
        result = envelope.get("result") or []
        records = [DNSRecord.from_api(r, zone) for r in result if isinstance(r, dict)]
        return records, ResultInfo.from_api(envelope.get("result_info"), len(records))

    def find_record(self, zone: Zone, name: str) -> Optional[DNSRecord]:
        """Return the first record named ``name`` in ``zone``, or None."""
        records, info = self._list_records(zone, name)
        if info.count == 0 or not records:
            return None
        return records[0]

    def _find_single_record(self, zone: Zone, name: str, action: str) -> DNSRecord:
        records, info = self._list_records(zone, name)
        if info.count == 0 or not records:
            raise RecordNotFoundError(f"no matching dns record has been found for '{name}'")
        if max(info.count, info.total_count) > 1:
            raise AmbiguousRecordError(f"cannot {action}, there's more than 1 record named '{name}'")
        return records[0]

    def create_record(self, zone: Zone, record_type: str, name: str, content: str) -> DNSRecord:
        envelope = self._request(
            "POST",
            f"/zones/{zone.id}/dns_records",
            "Creating cloudflare dns record",
            body={"type": record_type, "name": name, "content": content},
        )
        logger.info(f"Created dns record {name} ({record_type}) -> {content}")
        return DNSRecord.from_api(envelope.get("result") or {}, zone)

    def delete_record(self, record: DNSRecord) -> bool:
        self._request(
            "DELETE",
            f"/zones/{record.zone_id}/dns_records/{record.id}",
            "Deleting cloudflare dns record",
        )
        logger.info(f"Deleted dns record {record.name} ({record.type}) -> {record.content}")
        return True

    def _put_record(self, record: DNSRecord) -> DNSRecord:
        envelope = self._request(
            "PUT",
            f"/zones/{record.zone_id}/dns_records/{record.id}",
            "Updating cloudflare dns record",
            body=record.to_api(),
        )
        result = envelope.get("result")
        if not isinstance(result, dict):
            return record
        return DNSRecord.from_api(result, Zone(id=record.zone_id, name=record.zone_name))

    def update_record(self, record: DNSRecord, record_type: str, content: str) -> DNSRecord:
        """Replace the content of an existing record; the type must not change."""
        if record.type != record_type:
            raise CloudflareError(
                f"failed updating dns record {record.name}, you cannot change the type of an existing record"
            )
        updated = self._put_record(replace(record, content=content))
        logger.info(f"Updated dns record {record.name} ({record_type}) -> {content}")
        return updated

    # -------------------------------------------------------------------------
    # Name-based operations
    # -------------------------------------------------------------------------

    def get_dns_record(self, name: str) -> DNSRecord:
        zone = self.resolve_zone(name)
        record = self.find_record(zone, name)
        if record is None:
            raise RecordNotFoundError(f"no matching dns record has been found for '{name}'")
        return record

    def create_dns_record(self, record_type: str, name: str, content: str) -> DNSRecord:
        zone = self.resolve_zone(name)
        return self.create_record(zone, record_type, name, content)

    def update_dns_record(self, record_type: str, name: str, content: str) -> DNSRecord:
        zone = self.resolve_zone(name)
        record = self.find_record(zone, name)
        if record is None:
            raise RecordNotFoundError(f"no matching dns record has been found for '{name}'")
        return self.update_record(record, record_type, content)

    def delete_dns_record(self, name: str) -> bool:
        zone = self.resolve_zone(name)
        record = self.find_record(zone, name)
        if record is None:
            raise RecordNotFoundError(f"no matching dns record has been found for '{name}'")
        return self.delete_record(record)

    def delete_record_if_matching(self, name: str, record_type: str, content: str) -> bool:
        """Delete ``name`` only if the live record still has this type and content."""
        zone = self.resolve_zone(name)
        record = self.find_record(zone, name)
        if record is None:
            raise RecordNotFoundError(f"no matching dns record has been found for '{name}'")
        if record.type != record_type or record.content != content:
            raise RecordMismatchError(
                f"type or content of {name} does not match: "
                f"live {record.type} -> {record.content}, expected {record_type} -> {content}"
            )
        return self.delete_record(record)

    def upsert_record(self, record_type: str, name: str, content: str, proxied: bool) -> DNSRecord:
        """Create the record, or bring an existing one to the requested type and content.

        A type change cannot be done in place, so the old record is deleted
        and a new one created. When an existing record is proxied but should
        not be, the flag is cleared in the same update, since the new content
        might not allow proxying.
        """
        zone = self.resolve_zone(name)
        records, info = self._list_records(zone, name)
        logger.debug(f"Retrieved {info.count} dns record(s) for {name}")

        if max(info.count, info.total_count) > 1:
            raise AmbiguousRecordError(f"cannot upsert, there's more than 1 record named '{name}'")

        if info.count == 1 and records:
            existing = records[0]
            if existing.type != record_type:
                logger.info(
                    f"Replacing dns record {name} ({existing.type} -> {record_type}), type changes require delete and create"
                )
                self.delete_record(existing)
                return self.create_record(zone, record_type, name, content)

            if existing.proxied and not proxied:
                existing = replace(existing, proxied=False)
            return self.update_record(existing, record_type, content)

        return self.create_record(zone, record_type, name, content)

    def update_proxy_setting(self, name: str, proxied: bool) -> DNSRecord:
        """Set the proxied flag on ``name``; no-op when the record is not proxiable."""
        zone = self.resolve_zone(name)
        record = self._find_single_record(zone, name, "update proxy setting")
        if not record.proxiable:
            logger.debug(f"Dns record {name} is not proxiable, leaving proxied setting untouched")
            return record

        updated = self._put_record(replace(record, proxied=proxied))
        logger.info(f"{'Enabled' if proxied else 'Disabled'} proxying for dns record {name}")
        return updated
