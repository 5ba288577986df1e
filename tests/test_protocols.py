"""Unit tests for service protocol classification."""

from middleware_manager.models import Protocol
from middleware_manager.protocols import (
    classify_service_protocol,
    mark_udp_servers,
    strip_udp_markers,
)


class TestClassifyServiceProtocol:
    """Tests for classify_service_protocol."""

    def test_url_servers_are_http(self) -> None:
        """Test loadBalancer servers with url are HTTP."""
        config = {"servers": [{"url": "http://backend:80"}]}
        assert classify_service_protocol("web", "loadBalancer", config) == Protocol.HTTP

    def test_address_servers_are_tcp(self) -> None:
        """Test loadBalancer servers with address are TCP."""
        config = {"servers": [{"address": "db:5432"}]}
        assert classify_service_protocol("postgres", "loadBalancer", config) == Protocol.TCP

    def test_udp_prefix(self) -> None:
        """Test a udp:// address marks the service UDP."""
        config = {"servers": [{"address": "udp://dns:53"}]}
        assert classify_service_protocol("dns", "loadBalancer", config) == Protocol.UDP

    def test_udp_hint_in_id_or_name(self) -> None:
        """Test a udp token in the id or name marks address servers UDP."""
        config = {"servers": [{"address": "dns:53"}]}
        assert classify_service_protocol("dns-udp@file", "loadBalancer", config) == Protocol.UDP
        assert classify_service_protocol("dns", "loadBalancer", config, "DNS udp") == Protocol.UDP

    def test_udp_substring_is_not_a_hint(self) -> None:
        """Test 'udp' inside another word does not count."""
        config = {"servers": [{"address": "cloud:9000"}]}
        assert classify_service_protocol("studpoker", "loadBalancer", config) == Protocol.TCP

    def test_composite_types_are_http(self) -> None:
        """Test weighted, mirroring and failover are HTTP."""
        for kind in ("weighted", "mirroring", "failover"):
            assert classify_service_protocol("x-udp", kind, {"services": []}) == Protocol.HTTP

    def test_empty_servers_are_http(self) -> None:
        """Test a loadBalancer without servers defaults to HTTP."""
        assert classify_service_protocol("x", "loadBalancer", {}) == Protocol.HTTP
        assert classify_service_protocol("x", "loadBalancer", {"servers": [{}]}) == Protocol.HTTP


class TestUdpMarkers:
    """Tests for marking and stripping UDP server addresses."""

    def test_mark_and_strip(self) -> None:
        """Test markers are added once and removed on output."""
        config = {"servers": [{"address": "dns:53"}]}
        marked = mark_udp_servers(config)
        assert marked == {"servers": [{"address": "udp://dns:53"}]}
        assert mark_udp_servers(marked) == marked
        assert strip_udp_markers(marked) == config
        # inputs untouched
        assert config == {"servers": [{"address": "dns:53"}]}
