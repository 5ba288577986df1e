"""Unit tests for identifier and provider-suffix helpers."""

import pytest

from middleware_manager.identifiers import (
    add_provider_suffix,
    default_service_suffix,
    extract_host_from_rule,
    format_service_name,
    get_provider_suffix,
    middleware_reference,
    normalize_id,
    parse_comma_list,
    resolve_service_reference,
    strip_provider_suffix,
)
from middleware_manager.models import DataSourceType


class TestProviderSuffix:
    """Tests for adding and stripping provider suffixes."""

    def test_strip_removes_suffix(self) -> None:
        """Test the part after the first '@' is removed."""
        assert strip_provider_suffix("app@docker") == "app"
        assert strip_provider_suffix("app") == "app"

    def test_strip_keeps_leading_at(self) -> None:
        """Test an id starting with '@' is returned unchanged."""
        assert strip_provider_suffix("@file") == "@file"

    def test_get_suffix(self) -> None:
        """Test the suffix is returned including the '@'."""
        assert get_provider_suffix("app@http") == "@http"
        assert get_provider_suffix("app") == ""

    def test_add_is_idempotent(self) -> None:
        """Test adding a suffix twice gives the same id."""
        once = add_provider_suffix("app", "@file")
        assert once == "app@file"
        assert add_provider_suffix(once, "@file") == "app@file"

    def test_add_never_stacks_suffixes(self) -> None:
        """Test an id that already carries a different suffix is left alone."""
        assert add_provider_suffix("app@docker", "@file") == "app@docker"

    def test_add_accepts_suffix_without_at(self) -> None:
        """Test the '@' is supplied when missing."""
        assert add_provider_suffix("app", "http") == "app@http"

    def test_middleware_reference(self) -> None:
        """Test local middlewares get @file and qualified ones pass through."""
        assert middleware_reference("auth") == "auth@file"
        assert middleware_reference("badger@http") == "badger@http"


class TestNormalizeId:
    """Tests for cross-source id normalization."""

    @pytest.mark.parametrize(
        "identifier,expected",
        [
            ("svc@docker", "svc"),
            ("svc@http", "svc"),
            ("svc", "svc"),
            ("app-auth-auth@file", "app-auth"),
            ("app-auth-auth-auth", "app-auth"),
            ("app-router-redirect-auth", "app-router-redirect"),
            ("app-redirect-auth", "app-redirect-auth"),
            ("  svc@http ", "svc"),
        ],
    )
    def test_normalize(self, identifier: str, expected: str) -> None:
        """Test suffixes and auth cascades are normalized."""
        assert normalize_id(identifier) == expected

    def test_sources_agree(self) -> None:
        """Test the same service reported by both sources normalizes equally."""
        assert normalize_id("whoami@docker") == normalize_id("whoami@http")


class TestServiceReference:
    """Tests for router service reference resolution."""

    def test_custom_service_is_file(self) -> None:
        """Test custom assignments always point at our own file."""
        ref = resolve_service_reference(
            "backend@docker",
            source_type="proxy-api",
            active_type=DataSourceType.PROXY_API,
            custom=True,
        )
        assert ref == "backend@file"

    def test_proxy_resource_under_proxy_is_docker(self) -> None:
        """Test a proxy-discovered resource references a docker service."""
        ref = resolve_service_reference(
            "whoami", source_type="proxy-api", active_type=DataSourceType.PROXY_API
        )
        assert ref == "whoami@docker"

    def test_gateway_resource_is_http(self) -> None:
        """Test gateway resources reference HTTP-provider services."""
        ref = resolve_service_reference(
            "whoami@docker", source_type="gateway", active_type=DataSourceType.GATEWAY
        )
        assert ref == "whoami@http"

    def test_gateway_resource_under_proxy_is_http(self) -> None:
        """Test a gateway resource still references @http after switching sources."""
        ref = resolve_service_reference(
            "whoami", source_type="gateway", active_type=DataSourceType.PROXY_API
        )
        assert ref == "whoami@http"

    def test_default_service_suffix(self) -> None:
        """Test new services are suffixed after the active source."""
        assert default_service_suffix(DataSourceType.PROXY_API) == "@docker"
        assert default_service_suffix(DataSourceType.GATEWAY) == "@http"


class TestHostExtraction:
    """Tests for extracting hosts from router rules."""

    def test_simple_rule(self) -> None:
        """Test a plain Host rule."""
        assert extract_host_from_rule("Host(`app.example.com`)") == "app.example.com"

    def test_compound_rule(self) -> None:
        """Test the first Host matcher of a compound rule."""
        rule = "Host(`a.example.com`) && PathPrefix(`/api`)"
        assert extract_host_from_rule(rule) == "a.example.com"

    def test_no_host(self) -> None:
        """Test rules without a Host matcher give an empty string."""
        assert extract_host_from_rule("PathPrefix(`/api`)") == ""
        assert extract_host_from_rule("") == ""

    def test_unterminated(self) -> None:
        """Test a Host matcher without its closing backtick gives an empty string."""
        assert extract_host_from_rule("Host(`broken.example.com") == ""


class TestFormatting:
    """Tests for display names and comma lists."""

    def test_format_service_name(self) -> None:
        """Test ids become title-cased display names."""
        assert format_service_name("my-api_svc@docker") == "My Api Svc"

    def test_parse_comma_list(self) -> None:
        """Test blanks and whitespace are dropped."""
        assert parse_comma_list(" web, websecure ,,") == ["web", "websecure"]
        assert parse_comma_list("") == []
