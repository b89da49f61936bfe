"""
Target Registry for the Connect Exporter

Holds the set of Kafka Connect REST endpoints to poll. The set is replaced
as a whole on reload; nothing is removed from it field by field.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import yaml

from src.utils.config import ConfigError

logger = logging.getLogger(__name__)


class Reachability(str, Enum):
    """Last known reachability of an endpoint."""

    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass(eq=False)
class Endpoint:
    """
    A Kafka Connect REST endpoint.

    Attributes:
        name: Identifier used in logs and as registry key
        url: Base URL without trailing slash
        reachability: Updated by the poller only
    """

    name: str
    url: str
    reachability: Reachability = field(default=Reachability.UNKNOWN)

    @property
    def instance(self) -> str:
        """URL without scheme, used as the `instance` metric label."""
        parsed = urlparse(self.url)
        return f"{parsed.netloc}{parsed.path}"

    def __repr__(self) -> str:
        return f"Endpoint(name={self.name!r}, url={self.url!r}, reachability={self.reachability.value})"


def normalize_url(raw: str) -> str:
    """
    Strip whitespace and trailing slashes and check the URL is usable.

    Raises:
        ConfigError: If the scheme is not http/https or the host is missing
    """
    url = raw.strip().rstrip('/')
    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid Kafka Connect URL: {raw!r}")

    return url


def _endpoint_from_url(url: str, name: Optional[str] = None) -> Endpoint:
    url = normalize_url(url)
    return Endpoint(name=name or urlparse(url).netloc, url=url)


def parse_endpoint_list(text: Optional[str]) -> List[Endpoint]:
    """
    Parse a comma-separated URL list (the KAFKA_CONNECT_URLS format).

    Empty items are ignored; an empty string yields an empty list.

    Raises:
        ConfigError: If any URL is invalid or listed twice
    """
    endpoints = [
        _endpoint_from_url(item)
        for item in (text or "").split(',')
        if item.strip()
    ]
    _check_unique(endpoints)
    return endpoints


def parse_endpoint_document(document: Any) -> List[Endpoint]:
    """
    Parse a structured endpoint definition.

    Accepted shapes:
        - a list of URL strings
        - a list of {"name": ..., "url": ...} mappings
        - a mapping with an "endpoints" key holding either list

    Raises:
        ConfigError: On any other shape or invalid entry
    """
    if isinstance(document, dict):
        document = document.get("endpoints")

    if document is None:
        return []

    if not isinstance(document, list):
        raise ConfigError("Endpoint document must be a list or contain an 'endpoints' list")

    endpoints = []
    for index, entry in enumerate(document):
        if isinstance(entry, str):
            endpoints.append(_endpoint_from_url(entry))
        elif isinstance(entry, dict) and isinstance(entry.get("url"), str):
            name = entry.get("name")
            if name is not None and not isinstance(name, str):
                raise ConfigError(f"Endpoint #{index} has a non-string name")
            endpoints.append(_endpoint_from_url(entry["url"], name))
        else:
            raise ConfigError(f"Endpoint #{index} must be a URL or a mapping with 'url'")

    _check_unique(endpoints)
    return endpoints


def load_endpoints_file(path: str) -> List[Endpoint]:
    """
    Load endpoints from a YAML or JSON file.

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    file_path = Path(path)
    try:
        text = file_path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read endpoints file {path}: {e}")

    try:
        if file_path.suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse endpoints file {path}: {e}")

    endpoints = parse_endpoint_document(document)
    logger.info(f"Loaded {len(endpoints)} endpoints from {path}")
    return endpoints


def _check_unique(endpoints: Sequence[Endpoint]) -> None:
    seen_names = set()
    seen_urls = set()
    for endpoint in endpoints:
        if endpoint.name in seen_names or endpoint.url in seen_urls:
            raise ConfigError(f"Duplicate endpoint: {endpoint.name} ({endpoint.url})")
        seen_names.add(endpoint.name)
        seen_urls.add(endpoint.url)


class TargetRegistry:
    """
    Current set of endpoints to poll.

    Readers get an immutable tuple; reload() swaps in a new tuple in one
    assignment and bumps the generation counter.
    """

    def __init__(self, endpoints: Optional[Iterable[Endpoint]] = None):
        self._endpoints: Tuple[Endpoint, ...] = tuple(endpoints or ())
        self._generation = 0
        self._reload_lock = threading.Lock()

        if not self._endpoints:
            logger.warning("Target registry is empty; no connector metrics will be served")
        else:
            logger.info(f"Target registry initialized with {len(self._endpoints)} endpoints")

    @property
    def generation(self) -> int:
        return self._generation

    def current_targets(self) -> Tuple[Endpoint, ...]:
        """Ordered endpoints of the current generation."""
        return self._endpoints

    def contains(self, endpoint: Endpoint) -> bool:
        """True if this exact Endpoint object belongs to the current set."""
        return any(existing is endpoint for existing in self._endpoints)

    def reload(self, new_endpoints: Iterable[Endpoint]) -> int:
        """
        Replace the endpoint set.

        Endpoints whose URL survives the reload keep their Endpoint object
        (and therefore their reachability). Polls already running against
        removed endpoints finish, and their results are discarded by the
        caller via contains().

        Returns:
            The new generation number
        """
        new_list = list(new_endpoints)
        _check_unique(new_list)

        with self._reload_lock:
            existing = {endpoint.url: endpoint for endpoint in self._endpoints}
            merged = []
            for endpoint in new_list:
                kept = existing.get(endpoint.url)
                if kept is not None and kept.name == endpoint.name:
                    merged.append(kept)
                else:
                    merged.append(endpoint)

            removed = set(existing) - {endpoint.url for endpoint in merged}

            self._endpoints = tuple(merged)
            self._generation += 1

        logger.info(
            f"Target registry reloaded: generation={self._generation}, "
            f"endpoints={len(merged)}, removed={sorted(removed)}"
        )
        return self._generation
