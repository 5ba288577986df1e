"""Field schemas for middleware, service and router payloads.

Stored configs are open JSON maps edited by hand or copied from upstream
APIs, so a port may arrive as "443", a flag as "true" and a removed header as
null. Each known kind gets a closed schema naming the type of every field the
proxy understands; `coerce` walks a payload against it and converts values to
the declared type. Fields a schema does not name are left exactly as found,
which keeps plugin configs and newer proxy options intact.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)

# =============================================================================
# Field Types
# =============================================================================

INT = "int"
BOOL = "bool"
STR = "str"
STR_LIST = "str_list"
STR_MAP = "str_map"


@dataclass(frozen=True)
class ListOf:
    """A list whose items all follow `item`."""

    item: "FieldType"


FieldType = Union[str, ListOf, Dict[str, Any]]

_TRUE_STRINGS = {"true", "yes", "on"}
_FALSE_STRINGS = {"false", "no", "off"}


def _to_int(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return value
        return int(number) if number.is_integer() else value
    return value


def _to_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    return value


def _to_str(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return value


def coerce(value: Any, field_type: FieldType) -> Any:
    """Return `value` converted to `field_type`.

    Values that cannot be converted are returned unchanged so a bad field is
    visible in the generated file rather than silently replaced.
    """
    if isinstance(field_type, dict):
        if not isinstance(value, dict):
            return value
        return {
            key: coerce(item, field_type[key]) if key in field_type else item
            for key, item in value.items()
        }
    if isinstance(field_type, ListOf):
        if not isinstance(value, list):
            return value
        return [coerce(item, field_type.item) for item in value]
    if field_type == INT:
        return _to_int(value)
    if field_type == BOOL:
        return _to_bool(value)
    if field_type == STR:
        return _to_str(value)
    if field_type == STR_LIST:
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [_to_str(item) for item in value]
        return value
    if field_type == STR_MAP:
        if not isinstance(value, dict):
            return value
        return {str(key): _to_str(item) for key, item in value.items()}
    raise ValueError(f"Unknown field type: {field_type!r}")


# =============================================================================
# Middleware Schemas
# =============================================================================

IP_STRATEGY = {"depth": INT, "excludedIPs": STR_LIST, "ipv6Subnet": INT}

SOURCE_CRITERION = {
    "ipStrategy": IP_STRATEGY,
    "requestHeaderName": STR,
    "requestHost": BOOL,
}

CLIENT_TLS = {"ca": STR, "cert": STR, "key": STR, "insecureSkipVerify": BOOL}

USER_AUTH = {
    "users": STR_LIST,
    "usersFile": STR,
    "realm": STR,
    "headerField": STR,
    "removeHeader": BOOL,
}

IP_FILTER = {
    "sourceRange": STR_LIST,
    "rejectStatusCode": INT,
    "ipStrategy": IP_STRATEGY,
}

CERT_FIELDS = {
    "country": BOOL,
    "province": BOOL,
    "locality": BOOL,
    "organization": BOOL,
    "organizationalUnit": BOOL,
    "commonName": BOOL,
    "serialNumber": BOOL,
    "domainComponent": BOOL,
}

MIDDLEWARE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "addPrefix": {"prefix": STR},
    "basicAuth": USER_AUTH,
    "digestAuth": USER_AUTH,
    "buffering": {
        "maxRequestBodyBytes": INT,
        "memRequestBodyBytes": INT,
        "maxResponseBodyBytes": INT,
        "memResponseBodyBytes": INT,
        "retryExpression": STR,
    },
    "chain": {"middlewares": STR_LIST},
    "circuitBreaker": {
        "expression": STR,
        "checkPeriod": STR,
        "fallbackDuration": STR,
        "recoveryDuration": STR,
        "responseCode": INT,
    },
    "compress": {
        "excludedContentTypes": STR_LIST,
        "includedContentTypes": STR_LIST,
        "minResponseBodyBytes": INT,
        "encodings": STR_LIST,
        "defaultEncoding": STR,
    },
    "contentType": {"autoDetect": BOOL},
    "errors": {"status": STR_LIST, "service": STR, "query": STR},
    "forwardAuth": {
        "address": STR,
        "trustForwardHeader": BOOL,
        "authResponseHeaders": STR_LIST,
        "authResponseHeadersRegex": STR,
        "authRequestHeaders": STR_LIST,
        "addAuthCookiesToResponse": STR_LIST,
        "forwardBody": BOOL,
        "maxBodySize": INT,
        "preserveLocationHeader": BOOL,
        "tls": CLIENT_TLS,
    },
    "grpcWeb": {"allowOrigins": STR_LIST},
    "headers": {
        "customRequestHeaders": STR_MAP,
        "customResponseHeaders": STR_MAP,
        "accessControlAllowCredentials": BOOL,
        "accessControlAllowHeaders": STR_LIST,
        "accessControlAllowMethods": STR_LIST,
        "accessControlAllowOriginList": STR_LIST,
        "accessControlAllowOriginListRegex": STR_LIST,
        "accessControlExposeHeaders": STR_LIST,
        "accessControlMaxAge": INT,
        "addVaryHeader": BOOL,
        "allowedHosts": STR_LIST,
        "hostsProxyHeaders": STR_LIST,
        "sslProxyHeaders": STR_MAP,
        "stsSeconds": INT,
        "stsIncludeSubdomains": BOOL,
        "stsPreload": BOOL,
        "forceSTSHeader": BOOL,
        "frameDeny": BOOL,
        "customFrameOptionsValue": STR,
        "contentTypeNosniff": BOOL,
        "browserXssFilter": BOOL,
        "customBrowserXSSValue": STR,
        "contentSecurityPolicy": STR,
        "contentSecurityPolicyReportOnly": STR,
        "publicKey": STR,
        "referrerPolicy": STR,
        "permissionsPolicy": STR,
        "isDevelopment": BOOL,
    },
    "inFlightReq": {"amount": INT, "sourceCriterion": SOURCE_CRITERION},
    "ipAllowList": IP_FILTER,
    "ipWhiteList": IP_FILTER,
    "passTLSClientCert": {
        "pem": BOOL,
        "info": {
            "notAfter": BOOL,
            "notBefore": BOOL,
            "sans": BOOL,
            "serialNumber": BOOL,
            "subject": CERT_FIELDS,
            "issuer": CERT_FIELDS,
        },
    },
    # Plugin payloads are owned by the plugin author.
    "plugin": {},
    "rateLimit": {
        "average": INT,
        "period": STR,
        "burst": INT,
        "sourceCriterion": SOURCE_CRITERION,
    },
    "redirectRegex": {"regex": STR, "replacement": STR, "permanent": BOOL},
    "redirectScheme": {"scheme": STR, "port": STR, "permanent": BOOL},
    "replacePath": {"path": STR},
    "replacePathRegex": {"regex": STR, "replacement": STR},
    "retry": {"attempts": INT, "initialInterval": STR},
    "stripPrefix": {"prefixes": STR_LIST, "forceSlash": BOOL},
    "stripPrefixRegex": {"regex": STR_LIST},
}

MIDDLEWARE_TYPES = frozenset(MIDDLEWARE_SCHEMAS)

# =============================================================================
# Service Schemas
# =============================================================================

STICKY = {
    "cookie": {
        "name": STR,
        "secure": BOOL,
        "httpOnly": BOOL,
        "sameSite": STR,
        "maxAge": INT,
        "path": STR,
    }
}

HEALTH_CHECK = {
    "scheme": STR,
    "mode": STR,
    "path": STR,
    "method": STR,
    "status": INT,
    "port": INT,
    "interval": STR,
    "unhealthyInterval": STR,
    "timeout": STR,
    "hostname": STR,
    "followRedirects": BOOL,
    "headers": STR_MAP,
}

SERVICE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "loadBalancer": {
        "servers": ListOf(
            {"url": STR, "address": STR, "weight": INT, "preservePath": BOOL, "tls": BOOL}
        ),
        "sticky": STICKY,
        "healthCheck": HEALTH_CHECK,
        "passHostHeader": BOOL,
        "responseForwarding": {"flushInterval": STR},
        "serversTransport": STR,
        "terminationDelay": INT,
        "proxyProtocol": {"version": INT},
    },
    "weighted": {
        "services": ListOf({"name": STR, "weight": INT}),
        "sticky": STICKY,
        "healthCheck": {},
    },
    "mirroring": {
        "service": STR,
        "mirrorBody": BOOL,
        "maxBodySize": INT,
        "mirrors": ListOf({"name": STR, "percent": INT}),
        "healthCheck": {},
    },
    "failover": {"service": STR, "fallback": STR, "healthCheck": {}},
}

# =============================================================================
# Router Schemas
# =============================================================================

TLS_DOMAINS = ListOf({"main": STR, "sans": STR_LIST})

HTTP_ROUTER = {
    "rule": STR,
    "service": STR,
    "entryPoints": STR_LIST,
    "middlewares": STR_LIST,
    "priority": INT,
    "tls": {"certResolver": STR, "options": STR, "domains": TLS_DOMAINS},
}

TCP_ROUTER = {
    "rule": STR,
    "service": STR,
    "entryPoints": STR_LIST,
    "middlewares": STR_LIST,
    "priority": INT,
    "tls": {
        "certResolver": STR,
        "passthrough": BOOL,
        "options": STR,
        "domains": TLS_DOMAINS,
    },
}


# =============================================================================
# Normalization Entry Points
# =============================================================================


def normalize_middleware_config(middleware_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    schema = MIDDLEWARE_SCHEMAS.get(middleware_type)
    if schema is None:
        logger.debug(f"No schema for middleware type '{middleware_type}', leaving config as-is")
        return copy.deepcopy(config)
    return coerce(copy.deepcopy(config), schema)


def normalize_service_config(service_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    schema = SERVICE_SCHEMAS.get(service_type)
    if schema is None:
        logger.debug(f"No schema for service type '{service_type}', leaving config as-is")
        return copy.deepcopy(config)
    return coerce(copy.deepcopy(config), schema)


def _normalize_typed_table(table: Dict[str, Any], schemas: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Entries of a middlewares/services table look like {name: {kind: config}}."""
    result = {}
    for name, entry in table.items():
        if isinstance(entry, dict):
            entry = {
                kind: coerce(config, schemas[kind]) if kind in schemas else config
                for kind, config in entry.items()
            }
        result[name] = entry
    return result


def _normalize_routers(table: Dict[str, Any], schema: Dict[str, Any]) -> Dict[str, Any]:
    return {name: coerce(router, schema) for name, router in table.items()}


def preserve_document_values(document: Dict[str, Any]) -> Dict[str, Any]:
    """Apply every schema to an assembled configuration document.

    Returns a new document; the input is not modified.
    """
    doc = copy.deepcopy(document)
    http = doc.get("http") or {}
    if "middlewares" in http:
        http["middlewares"] = _normalize_typed_table(http["middlewares"], MIDDLEWARE_SCHEMAS)
    if "services" in http:
        http["services"] = _normalize_typed_table(http["services"], SERVICE_SCHEMAS)
    if "routers" in http:
        http["routers"] = _normalize_routers(http["routers"], HTTP_ROUTER)
    for section in ("tcp", "udp"):
        block = doc.get(section) or {}
        if "services" in block:
            block["services"] = _normalize_typed_table(block["services"], SERVICE_SCHEMAS)
    tcp = doc.get("tcp") or {}
    if "routers" in tcp:
        tcp["routers"] = _normalize_routers(tcp["routers"], TCP_ROUTER)
    return doc
