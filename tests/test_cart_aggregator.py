"""
Unit tests for CartAggregator.
"""

import pytest

from models.cart import CartLineItem, CartSnapshot
from modules.cart_aggregator import CartAggregator


# Fixtures

@pytest.fixture
def aggregator():
    return CartAggregator()


def _item(product_id, quantity, weight, length=20, width=15, height=5):
    return CartLineItem(product_id, quantity, weight, length, width, height)


class TestWeight:
    """Total weight is the sum of unit weight times quantity."""

    def test_mixed_cart(self, aggregator):
        cart = CartSnapshot.of([_item("mug", 2, 200), _item("poster", 1, 600)])

        package = aggregator.aggregate(cart)

        assert package.total_weight_g == 1000
        assert not package.is_empty

    def test_empty_cart_is_sentinel(self, aggregator):
        package = aggregator.aggregate(CartSnapshot())

        assert package.total_weight_g == 0
        assert package.is_empty


class TestDimensions:
    """Length/width take the largest item, height stacks, all clamped."""

    def test_height_stacks_per_unit(self, aggregator):
        cart = CartSnapshot.of([_item("a", 3, 100, height=4), _item("b", 1, 100, height=6)])

        package = aggregator.aggregate(cart)

        assert package.height_cm == 18

    def test_length_and_width_use_largest_item(self, aggregator):
        cart = CartSnapshot.of([
            _item("a", 1, 100, length=30, width=12),
            _item("b", 1, 100, length=20, width=25),
        ])

        package = aggregator.aggregate(cart)

        assert package.length_cm == 30
        assert package.width_cm == 25

    def test_small_items_clamped_to_minimums(self, aggregator):
        cart = CartSnapshot.of([_item("tiny", 1, 10, length=1, width=1, height=0.5)])

        package = aggregator.aggregate(cart)

        assert package.length_cm == 16
        assert package.width_cm == 11
        assert package.height_cm == 2

    def test_large_items_clamped_to_maximums(self, aggregator):
        cart = CartSnapshot.of([_item("big", 10, 1000, length=200, width=150, height=30)])

        package = aggregator.aggregate(cart)

        assert package.length_cm == 105
        assert package.width_cm == 105
        assert package.height_cm == 105

    @pytest.mark.parametrize("quantity", [1, 2, 7, 40])
    def test_dimensions_always_within_bounds(self, aggregator, quantity):
        cart = CartSnapshot.of([_item("x", quantity, 250, length=18, width=9, height=3)])

        package = aggregator.aggregate(cart)

        assert 16 <= package.length_cm <= 105
        assert 11 <= package.width_cm <= 105
        assert 2 <= package.height_cm <= 105
        assert package.total_weight_g == 250 * quantity
