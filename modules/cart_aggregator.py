"""Package weight and dimensions from cart line items."""

from __future__ import annotations

from models.cart import CartSnapshot, PackageDimensions


class CartAggregator:
    """
    Turns a cart into the single package the carrier will price.

    Weights add up, length and width take the largest item, and height
    stacks every unit on top of the others. Each dimension is then clamped
    to the carrier's accepted range.
    """

    # (min, max) in centimetres, Correios limits for boxes
    LENGTH_BOUNDS = (16.0, 105.0)
    WIDTH_BOUNDS = (11.0, 105.0)
    HEIGHT_BOUNDS = (2.0, 105.0)

    @staticmethod
    def _clamp(value: float, bounds) -> float:
        low, high = bounds
        return min(max(value, low), high)

    def aggregate(self, cart: CartSnapshot) -> PackageDimensions:
        """
        Aggregate a cart into package dimensions.

        Returns:
            PackageDimensions; the zero-weight sentinel for an empty cart
        """
        if cart.is_empty:
            return PackageDimensions.empty()

        total_weight = sum(item.unit_weight_g * item.quantity for item in cart.items)
        length = max(item.length_cm for item in cart.items)
        width = max(item.width_cm for item in cart.items)
        height = sum(item.height_cm * item.quantity for item in cart.items)

        return PackageDimensions(
            total_weight_g=float(total_weight),
            length_cm=self._clamp(length, self.LENGTH_BOUNDS),
            width_cm=self._clamp(width, self.WIDTH_BOUNDS),
            height_cm=self._clamp(height, self.HEIGHT_BOUNDS),
        )
