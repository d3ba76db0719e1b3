"""Unit tests for CloudflareClient.

HTTP is faked by routing the client's session.request through an in-memory
table of Cloudflare envelopes keyed by (method, path, name filter).
"""

from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock, patch

import pytest
import requests

from cloudflare_dns.cloudflare import (
    DEFAULT_BASE_URL,
    AmbiguousRecordError,
    AmbiguousZoneError,
    CloudflareAPIError,
    CloudflareClient,
    DNSRecord,
    InvalidDNSNameError,
    RecordMismatchError,
    RecordNotFoundError,
    Zone,
    ZoneNotFoundError,
    get_last_items,
    get_matching_zone,
)

# =============================================================================
# Fake Cloudflare API
# =============================================================================


def envelope(
    result: Any,
    count: Optional[int] = None,
    per_page: int = 20,
    total_count: Optional[int] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": True, "errors": [], "messages": [], "result": result}
    if isinstance(result, list):
        n = len(result) if count is None else count
        total = n if total_count is None else total_count
        payload["result_info"] = {"page": 1, "per_page": per_page, "count": n, "total_count": total}
    return payload


def zone_payload(zone_id: str, name: str) -> Dict[str, Any]:
    return {"id": zone_id, "name": name, "status": "active"}


def record_payload(
    record_id: str,
    record_type: str,
    name: str,
    content: str,
    proxiable: bool = True,
    proxied: bool = False,
    zone_id: str = "zone-1",
) -> Dict[str, Any]:
    return {
        "id": record_id,
        "type": record_type,
        "name": name,
        "content": content,
        "proxiable": proxiable,
        "proxied": proxied,
        "ttl": 1,
        "zone_id": zone_id,
        "zone_name": "server.com",
    }


class FakeCloudflareAPI:
    """Routes requests to canned envelopes and records every call."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str, Optional[str]], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str], Optional[Dict[str, Any]]]] = []

    def add(self, method: str, path: str, payload: Dict[str, Any], name: Optional[str] = None) -> None:
        self.routes[(method, path, name)] = payload

    def request(self, method: str, url: str, params=None, json=None) -> MagicMock:
        assert url.startswith(DEFAULT_BASE_URL)
        path = url[len(DEFAULT_BASE_URL) :]
        name = (params or {}).get("name")
        self.calls.append((method, path, name, json))

        payload = self.routes.get((method, path, name))
        if payload is None:
            if method != "GET":
                raise AssertionError(f"unexpected {method} {path}")
            payload = envelope([])

        response = MagicMock()
        response.status_code = 200
        response.json.return_value = payload
        return response

    def methods(self) -> List[Tuple[str, str]]:
        return [(method, path) for method, path, _, _ in self.calls]


def create_client(api: FakeCloudflareAPI) -> CloudflareClient:
    client = CloudflareClient(api_key="r2kjepva04hijzv18u3e9ntphs79kctdxxj5w", api_email="name@server.com")
    client._session.request = MagicMock(side_effect=api.request)
    return client


def api_with_zone() -> FakeCloudflareAPI:
    api = FakeCloudflareAPI()
    api.add("GET", "/zones", envelope([zone_payload("zone-1", "server.com")]), name="server.com")
    return api


# =============================================================================
# Helpers
# =============================================================================


def test_get_last_items_returns_tail() -> None:
    assert get_last_items(["www", "server", "com"], 2) == ["server", "com"]
    assert get_last_items(["www", "server", "com"], 3) == ["www", "server", "com"]


def test_get_last_items_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError):
        get_last_items([], 1)
    with pytest.raises(ValueError):
        get_last_items(["www", "server", "com"], 4)


def test_get_matching_zone() -> None:
    zones = [Zone(id="abcd", name="server.com"), Zone(id="efgh", name="domain.com")]

    assert get_matching_zone(zones, "domain.com").id == "efgh"
    with pytest.raises(ZoneNotFoundError):
        get_matching_zone(zones, "other.com")
    with pytest.raises(ZoneNotFoundError):
        get_matching_zone([], "server.com")


# =============================================================================
# Authentication and envelope handling
# =============================================================================


class TestRequests:
    def test_sends_auth_headers(self) -> None:
        client = CloudflareClient(api_key="key", api_email="name@server.com")

        assert client._session.headers["X-Auth-Key"] == "key"
        assert client._session.headers["X-Auth-Email"] == "name@server.com"
        assert client._session.headers["Content-Type"] == "application/json"

    def test_unsuccessful_envelope_raises_api_error(self) -> None:
        api = FakeCloudflareAPI()
        api.add(
            "GET",
            "/zones",
            {"success": False, "errors": [{"code": 9103, "message": "Unknown X-Auth-Key"}], "messages": []},
            name="server.com",
        )
        client = create_client(api)

        with pytest.raises(CloudflareAPIError) as exc_info:
            client.resolve_zone("server.com")

        assert exc_info.value.errors == [{"code": 9103, "message": "Unknown X-Auth-Key"}]
        assert "Listing cloudflare zones failed" in str(exc_info.value)

    def test_transport_errors_propagate_unwrapped(self) -> None:
        client = CloudflareClient(api_key="key", api_email="name@server.com")

        with patch.object(client._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(requests.exceptions.ConnectionError):
                client.resolve_zone("www.server.com")

    def test_non_json_error_response_raises_http_error(self) -> None:
        client = CloudflareClient(api_key="key", api_email="name@server.com")
        response = MagicMock()
        response.status_code = 502
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("502 Bad Gateway")

        with patch.object(client._session, "request", return_value=response):
            with pytest.raises(requests.exceptions.HTTPError):
                client.resolve_zone("server.com")


# =============================================================================
# Zone resolution
# =============================================================================


class TestResolveZone:
    def test_single_label_fails_before_any_call(self) -> None:
        api = FakeCloudflareAPI()
        client = create_client(api)

        with pytest.raises(InvalidDNSNameError):
            client.resolve_zone("co")
        with pytest.raises(InvalidDNSNameError):
            client.resolve_zone("")

        assert api.calls == []

    def test_returns_zone_when_name_equals_zone(self) -> None:
        client = create_client(api_with_zone())

        zone = client.resolve_zone("server.com")

        assert zone == Zone(id="zone-1", name="server.com")

    def test_narrows_from_full_name_to_last_two_labels(self) -> None:
        api = api_with_zone()
        client = create_client(api)

        zone = client.resolve_zone("www.server.com")

        assert zone.name == "server.com"
        assert [name for _, _, name, _ in api.calls] == ["www.server.com", "server.com"]

    def test_multi_label_suffix_matches_most_specific_zone(self) -> None:
        api = FakeCloudflareAPI()
        api.add("GET", "/zones", envelope([zone_payload("zone-uk", "server.co.uk")]), name="server.co.uk")
        client = create_client(api)

        zone = client.resolve_zone("www.server.co.uk")

        assert zone.id == "zone-uk"
        assert [name for _, _, name, _ in api.calls] == ["www.server.co.uk", "server.co.uk"]

    def test_not_found_when_no_suffix_matches(self) -> None:
        api = FakeCloudflareAPI()
        client = create_client(api)

        with pytest.raises(ZoneNotFoundError):
            client.resolve_zone("www.unknown.com")

        assert [name for _, _, name, _ in api.calls] == ["www.unknown.com", "unknown.com"]

    def test_more_matches_than_one_page_is_ambiguous(self) -> None:
        api = FakeCloudflareAPI()
        zones = [zone_payload(f"zone-{i}", "server.com") for i in range(20)]
        api.add("GET", "/zones", envelope(zones, per_page=20, total_count=25), name="server.com")
        client = create_client(api)

        with pytest.raises(AmbiguousZoneError):
            client.resolve_zone("server.com")

    def test_full_first_page_without_exact_match_is_ambiguous(self) -> None:
        api = FakeCloudflareAPI()
        zones = [zone_payload(f"zone-{i}", f"other-{i}.server.com") for i in range(20)]
        api.add("GET", "/zones", envelope(zones, per_page=20, total_count=25), name="server.com")
        client = create_client(api)

        with pytest.raises(AmbiguousZoneError, match="25 zones match"):
            client.resolve_zone("www.server.com")

        assert [name for _, _, name, _ in api.calls] == ["www.server.com", "server.com"]


# =============================================================================
# Record lookups and CRUD
# =============================================================================


class TestRecords:
    def test_find_record_returns_none_when_count_is_zero(self) -> None:
        client = create_client(api_with_zone())

        assert client.find_record(Zone(id="zone-1", name="server.com"), "www.server.com") is None

    def test_find_record_returns_first_record(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-1", "A", "www.server.com", "1.2.3.4")]),
            name="www.server.com",
        )
        client = create_client(api)

        record = client.find_record(Zone(id="zone-1", name="server.com"), "www.server.com")

        assert record is not None
        assert record.id == "rec-1"
        assert record.content == "1.2.3.4"
        assert record.zone_id == "zone-1"

    def test_create_record_posts_type_name_content(self) -> None:
        api = api_with_zone()
        api.add(
            "POST",
            "/zones/zone-1/dns_records",
            envelope(record_payload("rec-new", "A", "www.server.com", "1.2.3.4")),
        )
        client = create_client(api)

        record = client.create_dns_record("A", "www.server.com", "1.2.3.4")

        assert record.id == "rec-new"
        assert api.calls[-1] == (
            "POST",
            "/zones/zone-1/dns_records",
            None,
            {"type": "A", "name": "www.server.com", "content": "1.2.3.4"},
        )

    def test_delete_dns_record_raises_when_missing(self) -> None:
        client = create_client(api_with_zone())

        with pytest.raises(RecordNotFoundError):
            client.delete_dns_record("www.server.com")

    def test_update_record_refuses_type_change(self) -> None:
        api = api_with_zone()
        client = create_client(api)
        record = DNSRecord(id="rec-1", type="CNAME", name="www.server.com", content="origin.server.com", zone_id="zone-1")

        with pytest.raises(Exception, match="cannot change the type"):
            client.update_record(record, "A", "1.2.3.4")

        assert api.calls == []


# =============================================================================
# Upsert
# =============================================================================


class TestUpsertRecord:
    def test_creates_when_no_record_exists(self) -> None:
        api = api_with_zone()
        api.add(
            "POST",
            "/zones/zone-1/dns_records",
            envelope(record_payload("rec-new", "A", "host.server.com", "1.2.3.4")),
        )
        client = create_client(api)

        record = client.upsert_record("A", "host.server.com", "1.2.3.4", True)

        assert record.id == "rec-new"
        assert ("POST", "/zones/zone-1/dns_records") in api.methods()
        assert not any(method in {"PUT", "DELETE"} for method, _ in api.methods())

    def test_type_change_deletes_then_creates(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-cname", "CNAME", "host.server.com", "origin.server.com")]),
            name="host.server.com",
        )
        api.add("DELETE", "/zones/zone-1/dns_records/rec-cname", envelope({"id": "rec-cname"}))
        api.add(
            "POST",
            "/zones/zone-1/dns_records",
            envelope(record_payload("rec-a", "A", "host.server.com", "1.2.3.4")),
        )
        client = create_client(api)

        record = client.upsert_record("A", "host.server.com", "1.2.3.4", True)

        mutations = [(m, p) for m, p in api.methods() if m != "GET"]
        assert mutations == [
            ("DELETE", "/zones/zone-1/dns_records/rec-cname"),
            ("POST", "/zones/zone-1/dns_records"),
        ]
        assert api.calls[-1][3] == {"type": "A", "name": "host.server.com", "content": "1.2.3.4"}
        assert record.type == "A"
        assert record.content == "1.2.3.4"

    def test_same_type_updates_content_in_place(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-a", "A", "host.server.com", "5.6.7.8", proxied=True)]),
            name="host.server.com",
        )
        api.add(
            "PUT",
            "/zones/zone-1/dns_records/rec-a",
            envelope(record_payload("rec-a", "A", "host.server.com", "1.2.3.4", proxied=True)),
        )
        client = create_client(api)

        record = client.upsert_record("A", "host.server.com", "1.2.3.4", True)

        mutations = [(m, p) for m, p in api.methods() if m != "GET"]
        assert mutations == [("PUT", "/zones/zone-1/dns_records/rec-a")]
        body = api.calls[-1][3]
        assert body["content"] == "1.2.3.4"
        assert body["proxied"] is True
        assert record.content == "1.2.3.4"

    def test_clears_proxied_flag_in_update_when_downgrading(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-a", "A", "host.server.com", "5.6.7.8", proxied=True)]),
            name="host.server.com",
        )
        api.add(
            "PUT",
            "/zones/zone-1/dns_records/rec-a",
            envelope(record_payload("rec-a", "A", "host.server.com", "1.2.3.4", proxied=False)),
        )
        client = create_client(api)

        client.upsert_record("A", "host.server.com", "1.2.3.4", False)

        body = api.calls[-1][3]
        assert body["proxied"] is False
        assert body["content"] == "1.2.3.4"

    def test_more_than_one_record_is_ambiguous(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope(
                [
                    record_payload("rec-1", "A", "host.server.com", "1.2.3.4"),
                    record_payload("rec-2", "A", "host.server.com", "5.6.7.8"),
                ]
            ),
            name="host.server.com",
        )
        client = create_client(api)

        with pytest.raises(AmbiguousRecordError):
            client.upsert_record("A", "host.server.com", "1.2.3.4", True)

        assert all(method == "GET" for method, _ in api.methods())


# =============================================================================
# Proxy setting and guarded delete
# =============================================================================


class TestUpdateProxySetting:
    def test_puts_record_with_proxied_flag_when_proxiable(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-a", "A", "host.server.com", "1.2.3.4", proxiable=True)]),
            name="host.server.com",
        )
        api.add(
            "PUT",
            "/zones/zone-1/dns_records/rec-a",
            envelope(record_payload("rec-a", "A", "host.server.com", "1.2.3.4", proxied=True)),
        )
        client = create_client(api)

        record = client.update_proxy_setting("host.server.com", True)

        assert api.calls[-1][0] == "PUT"
        assert api.calls[-1][3]["proxied"] is True
        assert record.proxied is True

    def test_noop_when_record_not_proxiable(self) -> None:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-a", "A", "host.server.com", "10.0.0.1", proxiable=False)]),
            name="host.server.com",
        )
        client = create_client(api)

        record = client.update_proxy_setting("host.server.com", True)

        assert all(method == "GET" for method, _ in api.methods())
        assert record.proxied is False

    def test_missing_record_raises(self) -> None:
        client = create_client(api_with_zone())

        with pytest.raises(RecordNotFoundError):
            client.update_proxy_setting("host.server.com", True)


class TestDeleteRecordIfMatching:
    def _api(self) -> FakeCloudflareAPI:
        api = api_with_zone()
        api.add(
            "GET",
            "/zones/zone-1/dns_records",
            envelope([record_payload("rec-a", "A", "host.server.com", "1.2.3.4")]),
            name="host.server.com",
        )
        api.add("DELETE", "/zones/zone-1/dns_records/rec-a", envelope({"id": "rec-a"}))
        return api

    def test_deletes_when_type_and_content_match(self) -> None:
        api = self._api()
        client = create_client(api)

        assert client.delete_record_if_matching("host.server.com", "A", "1.2.3.4") is True
        assert ("DELETE", "/zones/zone-1/dns_records/rec-a") in api.methods()

    def test_refuses_when_content_differs(self) -> None:
        api = self._api()
        client = create_client(api)

        with pytest.raises(RecordMismatchError):
            client.delete_record_if_matching("host.server.com", "A", "9.9.9.9")

        assert all(method == "GET" for method, _ in api.methods())

    def test_refuses_when_type_differs(self) -> None:
        api = self._api()
        client = create_client(api)

        with pytest.raises(RecordMismatchError):
            client.delete_record_if_matching("host.server.com", "CNAME", "1.2.3.4")
