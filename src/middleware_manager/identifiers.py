"""Identifier helpers shared by the watchers and the config generator.

Provider suffixes mark which configuration source declared an identifier:

    @file    local declarative file (what this tool writes)
    @docker  container discovery, seen through the proxy runtime API
    @http    HTTP provider, what the gateway hands the proxy
"""

from __future__ import annotations

import re
from typing import List

from middleware_manager.models import DataSourceType

FILE_PROVIDER = "@file"
DOCKER_PROVIDER = "@docker"
HTTP_PROVIDER = "@http"

AUTH_CASCADE_RE = re.compile(r"(-auth)+$")
REDIRECT_AUTH_RE = re.compile(r"-redirect-auth$")

HOST_RULE_PREFIX = "Host(`"
HOST_RULE_SUFFIX = "`)"


def strip_provider_suffix(identifier: str) -> str:
    """Return the part before the first '@' (a leading '@' is kept)."""
    idx = identifier.find("@")
    if idx > 0:
        return identifier[:idx]
    return identifier


def get_provider_suffix(identifier: str) -> str:
    idx = identifier.find("@")
    if idx > 0:
        return identifier[idx:]
    return ""


def add_provider_suffix(identifier: str, suffix: str) -> str:
    """Append a provider suffix unless the identifier already carries one.

    Calling it again on its own output returns the same string.
    """
    if not suffix or get_provider_suffix(identifier):
        return identifier
    if not suffix.startswith("@"):
        suffix = "@" + suffix
    return identifier + suffix


def normalize_id(identifier: str) -> str:
    """Key used to match the same object across data sources.

    Strips the provider suffix and collapses repeated "-auth" endings that
    derived router names pick up ("app-auth-auth" -> "app-auth"). Redirect
    routers never carry the auth ending.
    """
    base = strip_provider_suffix(identifier.strip())
    base = AUTH_CASCADE_RE.sub("-auth", base)
    if "-router" in base and "-redirect" in base:
        base = REDIRECT_AUTH_RE.sub("-redirect", base)
    return base


def default_service_suffix(active_type: DataSourceType) -> str:
    """Suffix given to services first seen while `active_type` is active."""
    if active_type == DataSourceType.PROXY_API:
        return DOCKER_PROVIDER
    return HTTP_PROVIDER


def resolve_service_reference(
    service_id: str,
    *,
    source_type: str,
    active_type: DataSourceType,
    custom: bool = False,
) -> str:
    """Provider-qualified service name for a router.

    A custom service assignment always lives in our own file. The default
    service of a resource discovered through the proxy API while the proxy
    API is active is a docker-discovered service; anything else came to the
    proxy over the HTTP provider.
    """
    base = strip_provider_suffix(service_id)
    if custom:
        return base + FILE_PROVIDER
    if (
        active_type == DataSourceType.PROXY_API
        and source_type == DataSourceType.PROXY_API.value
    ):
        return base + DOCKER_PROVIDER
    return base + HTTP_PROVIDER


def middleware_reference(middleware_id: str) -> str:
    """References that already name a provider are left untouched."""
    return add_provider_suffix(middleware_id, FILE_PROVIDER)


def format_service_name(identifier: str) -> str:
    """Readable name from an id: "my-api_svc@docker" -> "My Api Svc"."""
    name = strip_provider_suffix(identifier)
    name = name.replace("-", " ").replace("_", " ")
    return " ".join(part[:1].upper() + part[1:] for part in name.split())


def extract_host_from_rule(rule: str) -> str:
    """Host of the first Host(`...`) matcher in a router rule.

    Only the backtick form is recognised: "Host(`a.example.com`) && PathPrefix(`/x`)"
    gives "a.example.com". Anything else gives "".
    """
    if not rule:
        return ""
    start = rule.find(HOST_RULE_PREFIX)
    if start < 0:
        return ""
    rest = rule[start + len(HOST_RULE_PREFIX):]
    end = rest.find(HOST_RULE_SUFFIX)
    if end < 0:
        return ""
    return rest[:end].strip()


def parse_comma_list(value: str) -> List[str]:
    """Split a comma list, dropping blanks and surrounding whitespace."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]
