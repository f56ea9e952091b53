from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from treasurybot.domain.models import ProtocolMetrics
from treasurybot.domain.protocol_registry import ProtocolRegistry

ID_SEPARATOR = ":"
_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_protocol_id(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def base_segment(protocol_id: str) -> str:
    return normalize_protocol_id(protocol_id).split(ID_SEPARATOR, 1)[0]


def is_address(value: object) -> bool:
    return bool(_ADDRESS_RE.match(normalize_protocol_id(value)))


def is_whitelisted(protocol_id: str, whitelist: Iterable[str]) -> bool:
    """Match on the full canonical id or on its venue segment before the separator."""
    allowed = whitelist if isinstance(whitelist, set | frozenset) else set(whitelist)
    canonical = normalize_protocol_id(protocol_id)
    if not canonical:
        return False
    return canonical in allowed or base_segment(canonical) in allowed


def _metrics_address_index(metrics: ProtocolMetrics | None) -> dict[str, str]:
    index: dict[str, str] = {}
    if metrics is None:
        return index
    for venue in metrics.venues():
        index[normalize_protocol_id(venue.address)] = normalize_protocol_id(venue.id)
    return index


@dataclass(frozen=True)
class ProtocolResolver:
    registry: ProtocolRegistry = field(default_factory=ProtocolRegistry)

    normalize = staticmethod(normalize_protocol_id)

    def resolve_identifiers(
        self,
        whitelist: Iterable[str],
        live_metrics: ProtocolMetrics | None = None,
    ) -> frozenset[str]:
        identifiers: set[str] = set()
        metrics_index = _metrics_address_index(live_metrics)

        for entry in whitelist:
            normalized = normalize_protocol_id(entry)
            if not normalized:
                continue

            metrics_id = metrics_index.get(normalized)
            if metrics_id is not None:
                identifiers.add(metrics_id)
                continue
            if normalized in self.registry.by_id:
                identifiers.add(normalized)
                continue
            static_id = self.registry.by_address.get(normalized)
            if static_id is not None:
                identifiers.add(static_id)
                continue
            if ID_SEPARATOR in normalized:
                identifiers.add(normalized)
                continue
            label_id = self.registry.by_label.get(normalized)
            if label_id is not None:
                identifiers.add(label_id)
                continue
            identifiers.add(normalized)

        return frozenset(identifiers)

    def resolve_address(
        self,
        ref: str,
        live_metrics: ProtocolMetrics | None = None,
    ) -> str | None:
        normalized = normalize_protocol_id(ref)
        if not normalized:
            return None

        if live_metrics is not None:
            for venue in live_metrics.venues():
                if normalized in (
                    normalize_protocol_id(venue.id),
                    normalize_protocol_id(venue.address),
                ):
                    return venue.address

        static_address = self.registry.by_id.get(normalized)
        if static_address is not None:
            return static_address

        if is_address(normalized):
            return normalized
        return None

    def network_for(self, protocol_id: str) -> str | None:
        return self.registry.networks.get(normalize_protocol_id(protocol_id))
