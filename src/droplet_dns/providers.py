"""Instance inventory and DNS provider implementations.

Both talk to the DigitalOcean v2 API with a bearer token.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests

from .models import (
    Correction,
    CorrectionOp,
    Instance,
    InventoryFetchError,
    ProviderError,
    ProviderRecord,
    RecordKind,
    ZoneDesiredState,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.digitalocean.com/v2"
PAGE_SIZE = 200
MANAGED_TYPES = {kind.value for kind in RecordKind}


def _make_session(token: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
    )
    return session


def _iter_pages(
    session: requests.Session,
    url: str,
    key: str,
    timeout: float,
) -> Iterator[Dict[str, Any]]:
    """Yield items of a paginated listing, following ``links.pages.next``."""
    next_url: Optional[str] = url
    params: Optional[Dict[str, Any]] = {"per_page": PAGE_SIZE}
    while next_url:
        response = session.get(next_url, params=params, timeout=timeout)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise ValueError(f"Unexpected response format: missing '{key}' list")
        yield from data[key]
        # The next link already carries the query string.
        params = None
        links = data.get("links") or {}
        if not isinstance(links, dict) or not isinstance(links.get("pages") or {}, dict):
            raise ValueError("Unexpected response format: malformed 'links' object")
        next_url = (links.get("pages") or {}).get("next")


# =============================================================================
# Instance Source Interface and Implementations
# =============================================================================


class InstanceSource(ABC):
    """Abstract base class for compute inventories."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def list_instances(self) -> List[Instance]:
        """Return every running instance. Raises InventoryFetchError."""
        pass


class DigitalOceanInstanceSource(InstanceSource):
    """Lists droplets from the DigitalOcean API."""

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL, timeout_seconds: float = 10.0):
        self._url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = _make_session(token)

    @property
    def name(self) -> str:
        return "DigitalOcean droplets"

    def list_instances(self) -> List[Instance]:
        try:
            droplets = list(
                _iter_pages(self._session, f"{self._url}/droplets", "droplets", self._timeout)
            )
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise InventoryFetchError(f"Failed to list droplets: {e}") from e

        instances = []
        for droplet in droplets:
            if not isinstance(droplet, dict) or not droplet.get("name"):
                logger.warning(f"Skipping malformed droplet: {droplet}")
                continue
            instances.append(droplet_to_instance(droplet))
        logger.debug(f"Fetched {len(instances)} droplet(s)")
        return instances


def _first_address(networks: List[Dict[str, Any]], kind: str) -> Optional[str]:
    for network in networks or []:
        if isinstance(network, dict) and network.get("type") == kind and network.get("ip_address"):
            return str(network["ip_address"])
    return None


def droplet_to_instance(droplet: Dict[str, Any]) -> Instance:
    """Convert a droplet API object into an Instance."""
    networks = droplet.get("networks") or {}
    return Instance(
        name=str(droplet["name"]),
        tags=frozenset(str(t) for t in droplet.get("tags") or []),
        public_ipv4=_first_address(networks.get("v4"), "public"),
        private_ipv4=_first_address(networks.get("v4"), "private"),
        public_ipv6=_first_address(networks.get("v6"), "public"),
    )


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_corrections(self, zone_state: ZoneDesiredState) -> List[Correction]:
        """Return the ordered corrections that bring the zone to ``zone_state``."""
        pass


def diff_records(
    desired: List[ProviderRecord],
    current: List[ProviderRecord],
) -> Tuple[List[ProviderRecord], List[Tuple[ProviderRecord, ProviderRecord]], List[ProviderRecord]]:
    """Compare records by (name, type) and value.

    Returns ``(creates, modifies, deletes)``; modifies pair an existing record
    with its replacement. Identical desired records collapse into one.
    """
    desired_map: Dict[tuple, Dict[tuple, ProviderRecord]] = defaultdict(dict)
    for record in desired:
        desired_map[record.key()].setdefault(record.value(), record)
    current_map: Dict[tuple, Dict[tuple, ProviderRecord]] = defaultdict(dict)
    extra_current: List[ProviderRecord] = []
    for record in current:
        values = current_map[record.key()]
        if record.value() in values:
            # Exact duplicates on the provider side are removed.
            extra_current.append(record)
        else:
            values[record.value()] = record

    creates: List[ProviderRecord] = []
    modifies: List[Tuple[ProviderRecord, ProviderRecord]] = []
    deletes: List[ProviderRecord] = list(extra_current)

    for key in list(desired_map) + [k for k in current_map if k not in desired_map]:
        wanted = desired_map.get(key, {})
        existing = current_map.get(key, {})
        missing = [r for v, r in wanted.items() if v not in existing]
        stale = [r for v, r in existing.items() if v not in wanted]
        # Reuse stale records for changed values before creating new ones.
        for before, after in zip(stale, missing):
            modifies.append((before, after))
        creates.extend(missing[len(stale):])
        deletes.extend(stale[len(missing):])

    return creates, modifies, deletes


class DigitalOceanDNSProvider(DNSProvider):
    """DigitalOcean domain records provider.

    Only A, AAAA and SRV records are diffed unless ``full_zone_sync`` is set,
    in which case every record except SOA is reconciled.
    """

    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        full_zone_sync: bool = False,
    ):
        self._url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._full_zone_sync = full_zone_sync
        self._session = _make_session(token)

    @property
    def name(self) -> str:
        return "DigitalOcean DNS"

    def _in_scope(self, record: ProviderRecord) -> bool:
        rtype = record.canonical_type()
        if rtype == "SOA":
            return False
        return self._full_zone_sync or rtype in MANAGED_TYPES

    def get_records(self, zone: str) -> List[ProviderRecord]:
        url = f"{self._url}/domains/{zone}/records"
        try:
            items = list(_iter_pages(self._session, url, "domain_records", self._timeout))
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise ProviderError(f"Failed to list records for {zone}: {e}") from e

        records = []
        for item in items:
            if not isinstance(item, dict) or not item.get("type"):
                logger.warning(f"Skipping malformed record in {zone}: {item}")
                continue
            records.append(
                ProviderRecord(
                    type=str(item["type"]),
                    name=str(item.get("name") or "@"),
                    data=str(item.get("data") or ""),
                    ttl=int(item.get("ttl") or 0),
                    id=item.get("id"),
                    priority=item.get("priority"),
                    port=item.get("port"),
                    weight=item.get("weight"),
                )
            )
        return records

    def get_corrections(self, zone_state: ZoneDesiredState) -> List[Correction]:
        zone = zone_state.zone
        desired = [ProviderRecord.from_generated(r) for r in zone_state.records]
        current = [r for r in self.get_records(zone) if self._in_scope(r)]
        creates, modifies, deletes = diff_records(desired, current)

        corrections: List[Correction] = []
        for record in creates:
            corrections.append(
                Correction(
                    msg=f"CREATE {record.canonical_type()} {record.describe(zone)}",
                    apply=self._bind(self._create, zone, record),
                    op=CorrectionOp.CREATE,
                    record_type=record.canonical_type(),
                )
            )
        for before, after in modifies:
            corrections.append(
                Correction(
                    msg=(
                        f"MODIFY {after.canonical_type()} {before.describe(zone)}"
                        f" -> {after.data} ttl={after.ttl}"
                    ),
                    apply=self._bind(self._update, zone, before, after),
                    op=CorrectionOp.MODIFY,
                    record_type=after.canonical_type(),
                )
            )
        for record in deletes:
            corrections.append(
                Correction(
                    msg=f"DELETE {record.canonical_type()} {record.describe(zone)}",
                    apply=self._bind(self._delete, zone, record),
                    op=CorrectionOp.DELETE,
                    record_type=record.canonical_type(),
                )
            )
        return corrections

    @staticmethod
    def _bind(func: Callable[..., None], *args: Any) -> Callable[[], None]:
        return lambda: func(*args)

    def _payload(self, record: ProviderRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": record.canonical_type(),
            "name": record.name,
            "data": record.data,
            "ttl": record.ttl,
        }
        if record.canonical_type() == "SRV":
            payload.update(priority=record.priority, weight=record.weight, port=record.port)
        return payload

    def _request(self, method: str, url: str, **kwargs: Any) -> None:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {url} failed: {e}") from e

    def _create(self, zone: str, record: ProviderRecord) -> None:
        self._request("POST", f"{self._url}/domains/{zone}/records", json=self._payload(record))

    def _update(self, zone: str, before: ProviderRecord, after: ProviderRecord) -> None:
        self._request(
            "PUT",
            f"{self._url}/domains/{zone}/records/{before.id}",
            json=self._payload(after),
        )

    def _delete(self, zone: str, record: ProviderRecord) -> None:
        self._request("DELETE", f"{self._url}/domains/{zone}/records/{record.id}")
