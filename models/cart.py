"""
Cart data models.

A CartSnapshot is the frozen view of a customer's cart at the moment it is
handed to the shipping or checkout pipeline. Line items carry the physical
data the carrier needs (weight in grams, dimensions in centimetres).

Thread Safety:
    - CartLineItem and CartSnapshot are frozen dataclasses
    - Safe to pass to carrier threads and to use as cache input
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Tuple


@dataclass(frozen=True)
class CartLineItem:
    """One product line in the cart."""

    product_id: str
    """Catalog product id."""

    quantity: int
    """Units of this product."""

    unit_weight_g: float
    """Weight of one unit in grams."""

    length_cm: float
    """Length of one packed unit in centimetres."""

    width_cm: float
    """Width of one packed unit in centimetres."""

    height_cm: float
    """Height of one packed unit in centimetres (units stack on this axis)."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.product_id,
            "quantity": self.quantity,
            "weight": self.unit_weight_g,
            "length": self.length_cm,
            "width": self.width_cm,
            "height": self.height_cm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLineItem":
        """Create from the wire format used by the shipping endpoint."""
        return cls(
            product_id=str(data.get("id", data.get("product_id", ""))),
            quantity=int(data.get("quantity", 0)),
            unit_weight_g=float(data.get("weight", 0)),
            length_cm=float(data.get("length", 0)),
            width_cm=float(data.get("width", 0)),
            height_cm=float(data.get("height", 0)),
        )


@dataclass(frozen=True)
class CartSnapshot:
    """
    Immutable, ordered list of cart line items.

    Discarded once the order has been created from it.
    """

    items: Tuple[CartLineItem, ...] = ()

    @classmethod
    def of(cls, items: Iterable[CartLineItem]) -> "CartSnapshot":
        return cls(items=tuple(items))

    @property
    def is_empty(self) -> bool:
        return not self.items

    def product_quantities(self) -> List[Tuple[str, int]]:
        """Sorted (product_id, quantity) pairs, the cart's identity for caching."""
        return sorted((item.product_id, item.quantity) for item in self.items)


@dataclass(frozen=True)
class PackageDimensions:
    """
    Aggregated package sent to the carrier.

    A zero ``total_weight_g`` is the empty-cart sentinel: callers skip the
    rate lookup when ``is_empty`` is True.
    """

    total_weight_g: float
    length_cm: float
    width_cm: float
    height_cm: float

    @classmethod
    def empty(cls) -> "PackageDimensions":
        return cls(total_weight_g=0.0, length_cm=0.0, width_cm=0.0, height_cm=0.0)

    @property
    def is_empty(self) -> bool:
        return self.total_weight_g <= 0

    def to_dict(self) -> Dict[str, float]:
        return {
            "length": self.length_cm,
            "height": self.height_cm,
            "width": self.width_cm,
        }


@dataclass(frozen=True)
class CatalogProduct:
    """
    Read-only product data served by the catalog.

    Only the fields the fulfillment pipeline needs: price for the order
    total, physical data for shipping.
    """

    product_id: str
    name: str
    price: Decimal
    weight_g: float
    length_cm: float
    width_cm: float
    height_cm: float

    def to_line_item(self, quantity: int) -> CartLineItem:
        return CartLineItem(
            product_id=self.product_id,
            quantity=quantity,
            unit_weight_g=self.weight_g,
            length_cm=self.length_cm,
            width_cm=self.width_cm,
            height_cm=self.height_cm,
        )
