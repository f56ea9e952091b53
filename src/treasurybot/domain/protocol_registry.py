from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType


@dataclass(frozen=True)
class VenueConfig:
    id: str
    address: str
    venue: str
    token0: str
    token1: str
    network: str
    fallback_apy: Decimal = Decimal("0")
    fallback_risk: Decimal = Decimal("4")


DEFAULT_VENUES: tuple[VenueConfig, ...] = (
    VenueConfig(
        id="uniswap:usdc-usdt",
        address="0x3D44D591C8FC89daE3bc5f312c67CA0b44497b86",
        venue="uniswap",
        token0="USDC",
        token1="USDT",
        network="monad-testnet",
        fallback_apy=Decimal("8.0"),
    ),
    VenueConfig(
        id="uniswap:wmon-usdc",
        address="0x5323821dE342c56b80c99fbc7cD725f2da8eB87B",
        venue="uniswap",
        token0="WMON",
        token1="USDC",
        network="monad-testnet",
        fallback_apy=Decimal("12.5"),
    ),
)


@dataclass(frozen=True)
class ProtocolRegistry:
    """Static protocol index keyed by canonical id, lowercase address and label."""

    venues: tuple[VenueConfig, ...] = DEFAULT_VENUES
    by_id: MappingProxyType[str, str] = field(init=False, repr=False)
    by_address: MappingProxyType[str, str] = field(init=False, repr=False)
    by_label: MappingProxyType[str, str] = field(init=False, repr=False)
    networks: MappingProxyType[str, str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        by_id: dict[str, str] = {}
        by_address: dict[str, str] = {}
        by_label: dict[str, str] = {}
        networks: dict[str, str] = {}
        for venue in self.venues:
            venue_id = venue.id.strip().lower()
            address = venue.address.strip().lower()
            by_id[venue_id] = address
            by_address[address] = venue_id
            base_label = f"{venue.token0}/{venue.token1}".lower()
            by_label[base_label] = venue_id
            by_label[f"{venue.venue} {base_label}".lower()] = venue_id
            networks[venue_id] = venue.network.strip().lower()
        object.__setattr__(self, "venues", tuple(self.venues))
        object.__setattr__(self, "by_id", MappingProxyType(by_id))
        object.__setattr__(self, "by_address", MappingProxyType(by_address))
        object.__setattr__(self, "by_label", MappingProxyType(by_label))
        object.__setattr__(self, "networks", MappingProxyType(networks))

    @classmethod
    def from_venues(cls, venues: Iterable[VenueConfig]) -> ProtocolRegistry:
        return cls(venues=tuple(venues))
