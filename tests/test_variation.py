import random

import pytest

from renderbatch import config
from renderbatch.errors import ValidationError
from renderbatch.models import VariationRequest
from renderbatch.variation import estimate_cost, expand


@pytest.mark.parametrize("count", [0, 1, 7, 50])
def test_expand_returns_exactly_count_specs(count):
    request = VariationRequest(count=count, dimensions={"hookStyle": ["question", "shock", "story"]})
    specs = expand(request)
    assert len(specs) == count
    assert [spec.index for spec in specs] == list(range(count))


def test_expand_is_deterministic_without_randomization():
    request = VariationRequest(
        count=12,
        source_ref="sneaker-01",
        dimensions={"hookStyle": ["question", "shock"], "pacing": ["fast", "medium", "slow"]},
    )
    assert expand(request) == expand(request)


def test_round_robin_repeats_every_k_jobs():
    values = ["question", "shock", "story", "stat"]
    k = len(values)
    specs = expand(VariationRequest(count=2 * k, dimensions={"hookStyle": values}))

    for i in range(k):
        assert specs[i].dimensions["hookStyle"] == values[i]
        assert specs[i].dimensions["hookStyle"] == specs[i + k].dimensions["hookStyle"]


def test_empty_dimension_is_dropped():
    specs = expand(VariationRequest(count=3, dimensions={"hookStyle": ["question"], "transition": []}))
    assert all("transition" not in spec.dimensions for spec in specs)


def test_source_ref_is_carried_onto_every_spec():
    specs = expand(VariationRequest(count=3, source_ref="bottle-7"))
    assert {spec.source_ref for spec in specs} == {"bottle-7"}
    assert all(spec.dimensions == {} for spec in specs)


def test_randomized_dimension_is_reproducible_with_seed():
    request = VariationRequest(
        count=20,
        dimensions={"pacing": ["fast", "medium", "slow"], "hookStyle": ["question", "shock"]},
        randomize=["pacing"],
        seed=42,
    )
    first = expand(request)
    second = expand(request)
    assert first == second
    assert {spec.dimensions["pacing"] for spec in first} <= {"fast", "medium", "slow"}
    # Round-robin dimensions are unaffected by the random draw
    assert [spec.dimensions["hookStyle"] for spec in first[:4]] == ["question", "shock", "question", "shock"]


def test_explicit_rng_is_used():
    request = VariationRequest(count=10, dimensions={"pacing": ["fast", "slow"]}, randomize=["pacing"])
    assert expand(request, random.Random(3)) == expand(request, random.Random(3))


def test_negative_count_rejected():
    with pytest.raises(ValidationError):
        expand(VariationRequest(count=-1))


def test_count_over_limit_rejected():
    with pytest.raises(ValidationError, match="exceeds"):
        expand(VariationRequest(count=config.MAX_BATCH_JOBS + 1))


def test_required_dimension_without_values_rejected():
    request = VariationRequest(count=2, dimensions={"hookStyle": []}, required_dimensions=["hookStyle"])
    with pytest.raises(ValidationError, match="hookStyle"):
        expand(request)


def test_randomizing_unknown_dimension_rejected():
    with pytest.raises(ValidationError, match="voiceTone"):
        expand(VariationRequest(count=2, randomize=["voiceTone"]))


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        expand(VariationRequest(count=-5))


def test_estimate_cost_round_robin_tiers():
    request = VariationRequest(count=4, dimensions={"engineTier": ["low", "premium"]})
    total, by_tier = estimate_cost(request)
    assert total == pytest.approx(2 * 0.10 + 2 * 1.75)
    assert by_tier == {"low": pytest.approx(0.2), "premium": pytest.approx(3.5)}


def test_estimate_cost_randomized_tiers_uses_expected_share():
    request = VariationRequest(count=10, dimensions={"engineTier": ["free", "medium"]}, randomize=["engineTier"])
    total, by_tier = estimate_cost(request)
    assert total == pytest.approx(5 * 0.375)
    assert by_tier["free"] == 0.0


def test_estimate_cost_without_tier_is_free():
    total, by_tier = estimate_cost(VariationRequest(count=8))
    assert total == 0.0
    assert by_tier == {"free": 0.0}
