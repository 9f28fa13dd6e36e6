"""
Tests for provider state classification.
"""

from datetime import timedelta

import pytest

from subledger.billing.classification import ClassificationCase, classify
from subledger.billing.provider import UnknownProductError
from subledger.models.subscriber import Plan
from tests.conftest import NOW


def test_active_maps_product_to_plan(catalog, provider_state):
    result = classify(provider_state(product_id="price_pro"), NOW, catalog)

    assert result.case is ClassificationCase.ACTIVE
    assert result.plan is Plan.PRO
    assert result.status == "active"
    assert result.entitled is True


def test_cancelling_keeps_plan_until_billing_date(catalog, provider_state):
    result = classify(provider_state(cancel=True), NOW, catalog)

    assert result.case is ClassificationCase.CANCELLING
    assert result.plan is Plan.LITE
    assert result.status == "cancelling"
    assert result.entitled is True


@pytest.mark.parametrize(
    "next_billing",
    [NOW - timedelta(days=1), NOW, None],
    ids=["past", "boundary", "missing"],
)
def test_grace_elapsed_downgrades(catalog, provider_state, next_billing):
    result = classify(provider_state(cancel=True, next_billing=next_billing), NOW, catalog)

    assert result.case is ClassificationCase.GRACE_ELAPSED
    assert result.plan is Plan.FREE
    assert result.status == "expired"
    assert result.entitled is False


def test_cancelling_one_second_before_billing_date(catalog, provider_state):
    state = provider_state(cancel=True, next_billing=NOW + timedelta(seconds=1))

    assert classify(state, NOW, catalog).case is ClassificationCase.CANCELLING


@pytest.mark.parametrize("status", ["cancelled", "canceled", "CANCELLED"])
def test_cancelled_downgrades(catalog, provider_state, status):
    result = classify(provider_state(status=status), NOW, catalog)

    assert result.case is ClassificationCase.CANCELLED
    assert result.plan is Plan.FREE
    assert result.status == "expired"


@pytest.mark.parametrize("status", ["pending", "paused", "trialing", "past_due"])
def test_other_statuses_mirror_raw_status(catalog, provider_state, status):
    result = classify(provider_state(status=status), NOW, catalog)

    assert result.case is ClassificationCase.OTHER
    assert result.plan is Plan.FREE
    assert result.status == status
    assert result.entitled is False


def test_unknown_product_defaults_to_lowest_paid_plan(catalog, provider_state):
    result = classify(provider_state(product_id="price_legacy"), NOW, catalog)

    assert result.plan is Plan.LITE
    assert result.entitled is True


def test_unknown_product_strict_raises(catalog, provider_state):
    with pytest.raises(UnknownProductError):
        classify(provider_state(product_id="price_legacy"), NOW, catalog, strict=True)


def test_unknown_product_irrelevant_when_not_entitled(catalog, provider_state):
    state = provider_state(status="cancelled", product_id="price_legacy")

    assert classify(state, NOW, catalog, strict=True).plan is Plan.FREE
