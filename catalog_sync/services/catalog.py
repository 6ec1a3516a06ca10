from __future__ import annotations

from typing import Iterable, Protocol, Set

import structlog

from catalog_sync.models import JobKind
from catalog_sync.services.product_api import ProductItem

log = structlog.get_logger(__name__)

IN_STOCK = "instock"
OUT_OF_STOCK = "outofstock"
ON_BACKORDER = "onbackorder"


def stock_status_for(availability_type: str, availability_message: str = "") -> str:
    type_ = (availability_type or "").lower()
    message = (availability_message or "").lower()
    if not type_ and not message:
        return OUT_OF_STOCK
    if type_ in ("now", "available"):
        return IN_STOCK
    if any(s in message for s in ("out of stock", "unavailable", "discontinued")):
        return OUT_OF_STOCK
    if any(s in message for s in ("back order", "pre-order")):
        return ON_BACKORDER
    return IN_STOCK


class CatalogGateway(Protocol):
    """The local catalog. Entries are opaque and addressed by integer id."""

    async def apply(self, local_id: int, kind: JobKind, item: ProductItem) -> None: ...

    async def existing_ids(self, local_ids: Iterable[int]) -> Set[int]: ...


class NullCatalogGateway:
    """Accepts every update and reports every entry as present."""

    async def apply(self, local_id: int, kind: JobKind, item: ProductItem) -> None:
        fields = {"external_id": item.external_id}
        if kind is JobKind.PRICE:
            fields["price"] = str(item.price) if item.price is not None else None
        elif kind is JobKind.STOCK:
            fields["stock_status"] = stock_status_for(item.availability_type, item.availability_message)
        elif kind is JobKind.VARIATIONS:
            fields["variations"] = len(item.variations)
        log.debug("catalog.apply", local_id=local_id, kind=kind.value, **fields)

    async def existing_ids(self, local_ids: Iterable[int]) -> Set[int]:
        return set(local_ids)
