"""
Unit tests for the shipping estimator heuristic.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from modules.estimator import (
    FALLBACK_REASON,
    TIMEOUT_REASON,
    ShippingEstimator,
    is_express,
    service_name,
)


NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def estimator():
    return ShippingEstimator(estimate_ttl_seconds=60)


class TestServiceNames:

    @pytest.mark.parametrize("code,name", [
        ("04014", "SEDEX"),
        ("04510", "PAC"),
        ("04782", "SEDEX 12"),
        ("04790", "SEDEX 10"),
        ("04804", "SEDEX Hoje"),
        ("99999", "Correios 99999"),
    ])
    def test_known_and_unknown_codes(self, code, name):
        assert service_name(code) == name

    def test_express_detection(self):
        assert is_express("04014")
        assert is_express("04790")
        assert not is_express("04510")


class TestDistance:

    def test_same_region_uses_minimum_distance(self, estimator):
        assert estimator.distance_km("01310100", "04538133") == 50

    def test_sao_paulo_to_porto_alegre(self, estimator):
        distance = estimator.distance_km("01310100", "80010000")
        # sqrt(6.4841^2 + 4.5844^2) * 111
        assert distance == pytest.approx(881.5, abs=1.0)


class TestEstimate:

    def test_pac_same_region(self, estimator):
        quote = estimator.estimate("01310100", "04538133", 1000, "04510", now=NOW)

        # 12 + 1kg * 3 + 50 / 1000 * 0.02
        assert quote.price == Decimal("15.00")
        assert quote.eta_days == 3
        assert quote.is_estimate
        assert quote.service_name == "PAC"

    def test_sedex_long_distance(self, estimator):
        quote = estimator.estimate("01310100", "80010000", 2000, "04014", now=NOW)

        assert quote.price == Decimal("26.02")
        assert quote.eta_days == 1

    def test_estimate_expires_after_estimate_ttl(self, estimator):
        quote = estimator.estimate("01310100", "20040020", 500, "04014", now=NOW)

        assert quote.expires_at == NOW + timedelta(seconds=60)

    def test_reason_is_kept(self, estimator):
        quote = estimator.estimate(
            "01310100", "20040020", 500, "04014", reason=TIMEOUT_REASON, now=NOW
        )

        assert quote.reason == TIMEOUT_REASON
        assert quote.to_dict()["error"] == TIMEOUT_REASON


class TestFallback:

    def test_fixed_pair(self, estimator):
        options = estimator.fallback(now=NOW)

        assert [(o.service_code, o.price, o.eta_days) for o in options] == [
            ("04014", Decimal("28.90"), 3),
            ("04510", Decimal("18.90"), 8),
        ]
        assert all(o.is_estimate for o in options)
        assert all(o.reason == FALLBACK_REASON for o in options)
