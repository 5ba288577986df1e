"""Seed the store with stock middleware and service templates.

Templates are inserted only when their id is free, so an operator's edits to
a seeded template survive restarts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from middleware_manager.models import Middleware, Service, ServiceType
from middleware_manager.store import Store

logger = logging.getLogger(__name__)


def _parse_entry(item: Any, kind: str) -> Tuple[str, str, str, Dict[str, Any]]:
    if not isinstance(item, dict):
        raise ValueError(f"{kind} template must be a mapping")
    template_id = str(item.get("id") or "").strip()
    template_type = str(item.get("type") or "").strip()
    if not template_id or not template_type:
        raise ValueError(f"{kind} template needs an id and a type")
    config = item.get("config") or {}
    if not isinstance(config, dict):
        raise ValueError(f"{kind} template '{template_id}' config must be a mapping")
    name = str(item.get("name") or template_id).strip()
    return template_id, name, template_type, config


def load_templates(path: str) -> Tuple[List[Middleware], List[Service]]:
    """Read templates from a YAML file; malformed entries are skipped."""
    template_path = Path(path)
    if not template_path.exists():
        logger.warning(f"Templates file {template_path} not found, nothing to seed")
        return [], []

    with open(template_path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning(f"Templates file {template_path} is not a mapping, nothing to seed")
        return [], []

    middlewares: List[Middleware] = []
    for item in data.get("middlewares") or []:
        try:
            template_id, name, template_type, config = _parse_entry(item, "middleware")
        except ValueError as e:
            logger.warning(f"Skipping middleware template: {e}")
            continue
        middlewares.append(Middleware(id=template_id, name=name, type=template_type, config=config))

    services: List[Service] = []
    for item in data.get("services") or []:
        try:
            template_id, name, template_type, config = _parse_entry(item, "service")
        except ValueError as e:
            logger.warning(f"Skipping service template: {e}")
            continue
        if template_type not in ServiceType.values():
            logger.warning(f"Skipping service template '{template_id}' with unknown type '{template_type}'")
            continue
        services.append(
            Service(id=template_id, name=name, type=template_type, config=config, source_type="file")
        )

    return middlewares, services


def seed_templates(store: Store, path: str) -> Tuple[int, int]:
    """Insert templates whose id is not taken. Returns (middlewares, services) added."""
    middlewares, services = load_templates(path)

    existing_middlewares = {m.id for m in store.list_middlewares()}
    added_middlewares = 0
    for middleware in middlewares:
        if middleware.id in existing_middlewares:
            continue
        store.upsert_middleware(middleware)
        added_middlewares += 1

    added_services = sum(1 for service in services if store.insert_service(service))

    if added_middlewares or added_services:
        logger.info(
            f"Seeded {added_middlewares} middleware and {added_services} service template(s) from {path}"
        )
    return added_middlewares, added_services
