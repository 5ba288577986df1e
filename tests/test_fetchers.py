"""Unit tests for the gateway and proxy API fetchers."""

from typing import Dict
from unittest.mock import MagicMock, patch

import pytest
import requests

from middleware_manager.fetchers import (
    Deadline,
    FetchError,
    GatewayFetcher,
    ProxyAPIFetcher,
    create_fetcher,
)
from middleware_manager.models import BasicAuth, DataSourceConfig, DataSourceType


def _response(payload, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} Error")
    else:
        response.raise_for_status = MagicMock()
    return response


def _routes(table: Dict[str, object]):
    """side_effect serving canned responses by URL; unknown URLs refuse the connection."""

    def get(url, timeout=None):
        if url not in table:
            raise requests.exceptions.ConnectionError(f"refused: {url}")
        value = table[url]
        if isinstance(value, Exception):
            raise value
        return value

    return get


GATEWAY_DOCUMENT = {
    "http": {
        "routers": {
            "app-router": {
                "rule": "Host(`app.example.com`)",
                "service": "app-service",
                "entryPoints": ["websecure"],
                "tls": {"certResolver": "letsencrypt", "domains": [{"main": "app.example.com", "sans": ["www.example.com"]}]},
            },
            "plain-router": {"rule": "Host(`plain.example.com`)", "service": "plain-service"},
            "api-router": {"rule": "Host(`gw.example.com`)", "service": "api-service", "tls": {"certResolver": "letsencrypt"}},
            "path-router": {"rule": "PathPrefix(`/x`)", "service": "x", "tls": {"certResolver": "letsencrypt"}},
        },
        "services": {
            "app-service": {"loadBalancer": {"servers": [{"url": "http://10.0.0.5:80"}]}},
            "api-service": {"loadBalancer": {"servers": [{"url": "http://api:3000"}]}},
            "split": {"weighted": {"services": [{"name": "a", "weight": 1}]}},
            "unknown": {"something": {}},
        },
    },
    "tcp": {"services": {"db": {"loadBalancer": {"servers": [{"address": "10.0.0.6:5432"}]}}}},
    "udp": {"services": {"dns": {"loadBalancer": {"servers": [{"address": "10.0.0.7:53"}]}}}},
}


class TestGatewayFetcher:
    """Tests for GatewayFetcher."""

    @pytest.fixture
    def fetcher(self) -> GatewayFetcher:
        return GatewayFetcher(DataSourceConfig(DataSourceType.GATEWAY, "http://gw/api/v1/"))

    def test_fetch_resources(self, fetcher: GatewayFetcher) -> None:
        """Test only TLS routers with a host and no system name are returned."""
        with patch.object(fetcher._session, "get", return_value=_response(GATEWAY_DOCUMENT)) as mock_get:
            resources = fetcher.fetch_resources()

        assert mock_get.call_args[0][0] == "http://gw/api/v1/traefik-config"
        assert [r.id for r in resources] == ["app-router"]
        resource = resources[0]
        assert resource.host == "app.example.com"
        assert resource.service_id == "app-service"
        assert resource.source_type == "gateway"
        assert resource.entrypoints == "websecure"
        assert resource.tls_domains == "app.example.com,www.example.com"

    def test_fetch_services(self, fetcher: GatewayFetcher) -> None:
        """Test system and untyped services are skipped and UDP is marked."""
        with patch.object(fetcher._session, "get", return_value=_response(GATEWAY_DOCUMENT)):
            services = {s.id: s for s in fetcher.fetch_services()}

        assert set(services) == {"app-service", "split", "db", "dns"}
        assert services["split"].type == "weighted"
        assert services["db"].config == {"servers": [{"address": "10.0.0.6:5432"}]}
        assert services["dns"].config == {"servers": [{"address": "udp://10.0.0.7:53"}]}
        assert all(s.source_type == "gateway" for s in services.values())

    def test_http_error_raises(self, fetcher: GatewayFetcher) -> None:
        """Test a non-2xx answer is a FetchError."""
        with patch.object(fetcher._session, "get", return_value=_response({}, status_code=500)):
            with pytest.raises(FetchError):
                fetcher.fetch_resources()

    def test_invalid_json_raises(self, fetcher: GatewayFetcher) -> None:
        """Test an undecodable body is a FetchError."""
        response = _response(None)
        response.json.side_effect = ValueError("no json")
        with patch.object(fetcher._session, "get", return_value=response):
            with pytest.raises(FetchError):
                fetcher.fetch_services()

    def test_connection_error_flagged(self, fetcher: GatewayFetcher) -> None:
        """Test unreachable upstreams are reported as connection failures."""
        with patch.object(fetcher._session, "get", side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(FetchError) as exc_info:
                fetcher.fetch_resources()
        assert exc_info.value.connection_failed is True

    def test_empty_document(self, fetcher: GatewayFetcher) -> None:
        """Test an upstream with no routers yields an empty list, not an error."""
        with patch.object(fetcher._session, "get", return_value=_response({})):
            assert fetcher.fetch_resources() == []

    def test_malformed_section_raises(self, fetcher: GatewayFetcher) -> None:
        """Test a non-object http or udp section is a fetch error."""
        with patch.object(fetcher._session, "get", return_value=_response({"http": ["app-router"]})):
            with pytest.raises(FetchError):
                fetcher.fetch_resources()
        with patch.object(fetcher._session, "get", return_value=_response({"udp": "dns"})):
            with pytest.raises(FetchError):
                fetcher.fetch_services()

    def test_basic_auth_and_timeout(self) -> None:
        """Test credentials go on the session and the deadline caps the timeout."""
        config = DataSourceConfig(DataSourceType.GATEWAY, "http://gw", BasicAuth("user", "pass"))
        fetcher = GatewayFetcher(config, request_timeout=10.0)
        assert isinstance(fetcher._session.auth, requests.auth.HTTPBasicAuth)

        with patch.object(fetcher._session, "get", return_value=_response({})) as mock_get:
            fetcher.fetch_resources(Deadline(2.0))
        assert 0 < mock_get.call_args[1]["timeout"] <= 2.0

    def test_expired_deadline_skips_request(self, fetcher: GatewayFetcher) -> None:
        """Test no request is issued once the deadline has passed."""
        with patch.object(fetcher._session, "get") as mock_get:
            with pytest.raises(FetchError):
                fetcher.fetch_resources(Deadline(-1.0))
        mock_get.assert_not_called()


BASE = "http://proxy:8080"

PROXY_ROUTERS = [
    {
        "name": "whoami@docker",
        "rule": "Host(`whoami.example.com`)",
        "service": "whoami",
        "provider": "docker",
        "priority": 42,
        "entryPoints": ["websecure"],
        "tls": {"certResolver": "letsencrypt"},
    },
    {"name": "dashboard@internal", "rule": "Host(`x`)", "provider": "internal", "tls": {"certResolver": "le"}},
    {"name": "web@docker", "rule": "Host(`web.example.com`)", "service": "web", "provider": "docker"},
    {
        "name": "big@docker",
        "rule": "Host(`big.example.com`)",
        "service": "big",
        "priority": 9223372036854775000,
        "tls": {"certResolver": "letsencrypt"},
    },
    {"name": "neg@docker", "rule": "Host(`neg.example.com`)", "service": "neg", "priority": -1, "tls": {"certResolver": "le"}},
    {
        "name": "whoami-auth@file",
        "rule": "Host(`whoami.example.com`)",
        "service": "whoami@docker",
        "provider": "file",
        "tls": {"certResolver": "letsencrypt"},
    },
    {"name": "legacy-auth@file", "rule": "Host(`legacy.example.com`)", "service": "legacy", "tls": {"certResolver": "le"}},
]

PROXY_HTTP_SERVICES = [
    {"name": "whoami@docker", "provider": "docker", "loadBalancer": {"servers": [{"url": "http://172.17.0.2:80"}]}},
    {"name": "api@internal", "provider": "internal"},
    {"name": "noop@internal"},
]


class TestProxyAPIFetcher:
    """Tests for ProxyAPIFetcher."""

    @pytest.fixture
    def fetcher(self) -> ProxyAPIFetcher:
        return ProxyAPIFetcher(
            DataSourceConfig(DataSourceType.PROXY_API, BASE),
            fallback_urls=("http://fallback-a:8080", BASE, "http://fallback-b:8080"),
        )

    def test_configured_url_excluded_from_fallbacks(self, fetcher: ProxyAPIFetcher) -> None:
        """Test the primary URL is not retried as a fallback."""
        assert fetcher._fallback_urls == ("http://fallback-a:8080", "http://fallback-b:8080")

    def test_fetch_resources_array_payload(self, fetcher: ProxyAPIFetcher) -> None:
        """Test routers delivered as a JSON array."""
        routes = {f"{BASE}/api/http/routers": _response(PROXY_ROUTERS)}
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            resources = {r.id: r for r in fetcher.fetch_resources()}

        assert set(resources) == {"whoami@docker", "big@docker", "neg@docker"}
        assert resources["whoami@docker"].router_priority == 42
        assert resources["whoami@docker"].source_type == "proxy-api"
        assert resources["big@docker"].router_priority == 9223372036854775000
        assert resources["neg@docker"].router_priority == 100

    def test_fetch_resources_map_payload(self, fetcher: ProxyAPIFetcher) -> None:
        """Test routers delivered as an object keyed by name."""
        payload = {
            "whoami@docker": {
                "rule": "Host(`whoami.example.com`)",
                "service": "whoami",
                "tls": {"certResolver": "letsencrypt"},
            }
        }
        routes = {f"{BASE}/api/http/routers": _response(payload)}
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            resources = fetcher.fetch_resources()

        assert [(r.id, r.host) for r in resources] == [("whoami@docker", "whoami.example.com")]

    def test_generated_routers_skipped(self, fetcher: ProxyAPIFetcher) -> None:
        """Test routers served from our own file are not reported as resources."""
        payload = {
            "whoami-auth@file": {
                "rule": "Host(`whoami.example.com`)",
                "service": "whoami@docker",
                "provider": "file",
                "tls": {"certResolver": "letsencrypt"},
            },
            "whoami-auth-auth@file": {
                "rule": "Host(`whoami.example.com`)",
                "service": "whoami@docker",
                "tls": {"certResolver": "letsencrypt"},
            },
        }
        routes = {f"{BASE}/api/http/routers": _response(payload)}
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            assert fetcher.fetch_resources() == []

    def test_fetch_services(self, fetcher: ProxyAPIFetcher) -> None:
        """Test HTTP, TCP and UDP services are merged and internal ones skipped."""
        routes = {
            f"{BASE}/api/http/services": _response(PROXY_HTTP_SERVICES),
            f"{BASE}/api/tcp/services": _response(
                [{"name": "db@docker", "loadBalancer": {"servers": [{"address": "172.17.0.3:5432"}]}}]
            ),
            f"{BASE}/api/udp/services": _response(
                [{"name": "dns@docker", "loadBalancer": {"servers": [{"address": "172.17.0.4:53"}]}}]
            ),
        }
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            services = {s.id: s for s in fetcher.fetch_services()}

        assert set(services) == {"whoami@docker", "db@docker", "dns@docker"}
        assert services["dns@docker"].config["servers"][0]["address"] == "udp://172.17.0.4:53"

    def test_udp_not_found_is_empty(self, fetcher: ProxyAPIFetcher) -> None:
        """Test a proxy without UDP support still returns HTTP and TCP services."""
        routes = {
            f"{BASE}/api/http/services": _response(PROXY_HTTP_SERVICES),
            f"{BASE}/api/tcp/services": _response([]),
            f"{BASE}/api/udp/services": _response({}, status_code=404),
        }
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            services = fetcher.fetch_services()

        assert [s.id for s in services] == ["whoami@docker"]

    def test_tcp_failure_not_fatal(self, fetcher: ProxyAPIFetcher) -> None:
        """Test a failing TCP endpoint only drops TCP services."""
        routes = {
            f"{BASE}/api/http/services": _response(PROXY_HTTP_SERVICES),
            f"{BASE}/api/tcp/services": _response({}, status_code=500),
            f"{BASE}/api/udp/services": _response([]),
        }
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            services = fetcher.fetch_services()

        assert [s.id for s in services] == ["whoami@docker"]

    def test_http_services_failure_is_fatal(self, fetcher: ProxyAPIFetcher) -> None:
        """Test a failing HTTP services endpoint fails the fetch."""
        routes = {f"{BASE}/api/http/services": _response({}, status_code=500)}
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)):
            with pytest.raises(FetchError):
                fetcher.fetch_services()

    def test_fallback_on_connection_failure(self, fetcher: ProxyAPIFetcher) -> None:
        """Test the fallback URLs are tried in order when the primary is down."""
        routes = {"http://fallback-b:8080/api/http/routers": _response(PROXY_ROUTERS[:1])}
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)) as mock_get:
            resources = fetcher.fetch_resources()

        assert [r.id for r in resources] == ["whoami@docker"]
        tried = [call.args[0] for call in mock_get.call_args_list]
        assert tried == [
            f"{BASE}/api/http/routers",
            "http://fallback-a:8080/api/http/routers",
            "http://fallback-b:8080/api/http/routers",
        ]

    def test_no_fallback_on_http_error(self, fetcher: ProxyAPIFetcher) -> None:
        """Test an answering primary with an error status is not retried elsewhere."""
        routes = {f"{BASE}/api/http/routers": _response({}, status_code=401)}
        with patch.object(fetcher._session, "get", side_effect=_routes(routes)) as mock_get:
            with pytest.raises(FetchError):
                fetcher.fetch_resources()
        assert mock_get.call_count == 1

    def test_all_urls_fail(self, fetcher: ProxyAPIFetcher) -> None:
        """Test a FetchError when no URL answers."""
        with patch.object(fetcher._session, "get", side_effect=_routes({})):
            with pytest.raises(FetchError, match="All proxy API URLs failed"):
                fetcher.fetch_resources()


class TestCreateFetcher:
    """Tests for the fetcher factory."""

    def test_selects_by_type(self) -> None:
        """Test each data source type gets its fetcher."""
        assert isinstance(create_fetcher(DataSourceConfig(DataSourceType.GATEWAY, "http://gw")), GatewayFetcher)
        assert isinstance(create_fetcher(DataSourceConfig(DataSourceType.PROXY_API, "http://p")), ProxyAPIFetcher)

    def test_unknown_type(self) -> None:
        """Test an unknown type is rejected."""
        config = MagicMock(type="nginx", basic_auth=BasicAuth())
        with pytest.raises(ValueError):
            create_fetcher(config)
