"""Collector factory: map a data source's collector_type to a collect function.

A collector takes a DataSource and returns a CollectionResult (or an equivalent dict).
"""

import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import requests
from loguru import logger

from inventory.schemas.collection import CollectionResult, DataSource

CollectFn = Callable[[DataSource], Union[CollectionResult, Dict[str, Any]]]

# Registry: collector_type -> collect function
_COLLECTOR_REGISTRY: Dict[str, CollectFn] = {}


def register_collector(collector_type: str) -> Callable[[CollectFn], CollectFn]:
    """Decorator registering a collect function under collector_type."""

    def decorator(fn: CollectFn) -> CollectFn:
        _COLLECTOR_REGISTRY[collector_type] = fn
        return fn

    return decorator


def get_collector(collector_type: str) -> Optional[CollectFn]:
    """Return the collect function for collector_type, or None if none is registered."""
    collector = _COLLECTOR_REGISTRY.get(collector_type)
    if collector is None:
        logger.warning("No collector registered for type {}", collector_type)
    return collector


def list_collectors() -> List[str]:
    return sorted(_COLLECTOR_REGISTRY)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _extract_properties(payload: Any) -> list:
    """Accept a bare list or {"properties": [...]}."""
    if isinstance(payload, dict) and isinstance(payload.get("properties"), list):
        return payload["properties"]
    if isinstance(payload, list):
        return payload
    raise ValueError("expected a JSON list or an object with a 'properties' list")


@register_collector("json-file")
def collect_json_file(source: DataSource) -> CollectionResult:
    """Read property payloads from a local JSON file (metadata["path"] or a file:// url)."""
    start = time.perf_counter()
    path_value = source.metadata.get("path")
    if not path_value and source.url.startswith("file://"):
        path_value = urlparse(source.url).path
    if not path_value:
        return CollectionResult(success=False, error_message="json-file source has no path", duration=0.0)

    path = Path(path_value)
    try:
        with open(path, encoding="utf-8") as f:
            properties = _extract_properties(json.load(f))
    except (OSError, ValueError) as e:
        logger.warning("json-file collector failed for {}: {}", source.id, e)
        return CollectionResult(success=False, error_message=str(e), duration=_elapsed_ms(start))

    logger.info("Read {} properties from {}", len(properties), path)
    return CollectionResult(properties=properties, success=True, duration=_elapsed_ms(start))


@register_collector("http-json")
def collect_http_json(source: DataSource, timeout: int = 30) -> CollectionResult:
    """GET source.url and read property payloads from the JSON body."""
    start = time.perf_counter()
    try:
        response = requests.get(source.url, timeout=timeout, headers={"Accept": "application/json"})
        response.raise_for_status()
        properties = _extract_properties(response.json())
    except (requests.RequestException, ValueError) as e:
        logger.warning("http-json collector failed for {}: {}", source.id, e)
        return CollectionResult(success=False, error_message=str(e), duration=_elapsed_ms(start))

    logger.info("Fetched {} properties from {}", len(properties), source.url)
    return CollectionResult(properties=properties, success=True, duration=_elapsed_ms(start))
