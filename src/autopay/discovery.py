"""Service discovery collaborator used by the two-phase purchase flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from .money import to_decimal


@dataclass
class ServiceCandidate:
    """A paid service a purchase may be routed to."""

    id: str
    name: str
    endpoint: str
    price: str
    rating: Optional[float] = None
    provider: Optional[str] = None
    capabilities: list[str] = field(default_factory=list)
    description: str = ""

    @property
    def price_usd(self) -> Decimal:
        return to_decimal(self.price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "endpoint": self.endpoint,
            "price": self.price,
            "rating": self.rating,
            "provider": self.provider,
            "capabilities": list(self.capabilities),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceCandidate":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            endpoint=data["endpoint"],
            price=data["price"],
            rating=data.get("rating"),
            provider=data.get("provider"),
            capabilities=list(data.get("capabilities") or []),
            description=data.get("description", ""),
        )


class ServiceDiscovery(Protocol):
    async def search(
        self,
        capability: str,
        max_price: Optional[Decimal] = None,
        min_rating: Optional[float] = None,
    ) -> list[ServiceCandidate]:
        ...


class StaticDiscovery:
    """In-memory catalogue, ordered by rating."""

    def __init__(self, services: Iterable[ServiceCandidate]):
        self.services = list(services)

    async def search(
        self,
        capability: str,
        max_price: Optional[Decimal] = None,
        min_rating: Optional[float] = None,
    ) -> list[ServiceCandidate]:
        needle = capability.lower()
        found = []
        for service in self.services:
            haystack = [service.name.lower(), service.description.lower()]
            haystack.extend(c.lower() for c in service.capabilities)
            if not any(needle in text for text in haystack):
                continue
            if max_price is not None and service.price_usd > to_decimal(max_price):
                continue
            if min_rating is not None and (service.rating or 0) < min_rating:
                continue
            found.append(service)
        return sorted(found, key=lambda s: s.rating or 0, reverse=True)
