"""
Variation matrix: turns a VariationRequest into the ordered list of JobSpecs.

Job i gets values[i % len(values)] for every round-robin dimension, so
two calls with the same non-randomized request return identical specs.
Randomized dimensions are sampled independently per job; the draw is frozen
into the JobSpec and never recomputed.
"""

import random
from collections import defaultdict
from typing import Optional

from . import config
from .errors import ValidationError
from .models import JobSpec, VariationRequest
from .pricing import ENGINE_TIER_DIMENSION, cost_for_dimensions, normalize_tier


def validate_request(request: VariationRequest):
    if request.count < 0:
        raise ValidationError(f"count must be >= 0, got {request.count}")
    if request.count > config.MAX_BATCH_JOBS:
        raise ValidationError(
            f"count {request.count} exceeds the batch limit of {config.MAX_BATCH_JOBS} jobs"
        )

    for name in request.required_dimensions:
        if not request.dimensions.get(name):
            raise ValidationError(f"Dimension '{name}' needs at least one value")

    unknown = [name for name in request.randomize if name not in request.dimensions]
    if unknown:
        raise ValidationError(f"Cannot randomize unknown dimension(s): {', '.join(unknown)}")


def expand(request: VariationRequest, rng: Optional[random.Random] = None) -> list[JobSpec]:
    """
    Expand a request into exactly `request.count` JobSpecs.

    Args:
        request: Counts + dimension values chosen in the wizard.
        rng:     Random source for randomized dimensions. Defaults to
                 random.Random(request.seed).

    Raises:
        ValidationError: the request is malformed (see validate_request).
    """
    validate_request(request)

    if rng is None:
        rng = random.Random(request.seed)

    randomized = set(request.randomize)
    # Empty value lists drop the dimension instead of failing
    active = [(name, values) for name, values in request.dimensions.items() if values]

    specs = []
    for i in range(request.count):
        chosen = {}
        for name, values in active:
            if name in randomized:
                chosen[name] = values[rng.randrange(len(values))]
            else:
                chosen[name] = values[i % len(values)]
        specs.append(JobSpec(index=i, dimensions=chosen, source_ref=request.source_ref))

    return specs


def estimate_cost(request: VariationRequest) -> tuple[float, dict[str, float]]:
    """
    Cost preview for a request without creating a batch.

    Randomized tiers are priced at their expected value rather than a draw,
    so the preview does not depend on the seed.

    Returns:
        (total, per-tier subtotal)
    """
    validate_request(request)

    tiers = request.dimensions.get(ENGINE_TIER_DIMENSION) or []
    by_tier: dict[str, float] = defaultdict(float)

    if not tiers:
        by_tier[normalize_tier(None)] = cost_for_dimensions({}) * request.count
    elif ENGINE_TIER_DIMENSION in request.randomize:
        share = request.count / len(tiers)
        for tier in tiers:
            by_tier[normalize_tier(tier)] += cost_for_dimensions({ENGINE_TIER_DIMENSION: tier}) * share
    else:
        for i in range(request.count):
            tier = tiers[i % len(tiers)]
            by_tier[normalize_tier(tier)] += cost_for_dimensions({ENGINE_TIER_DIMENSION: tier})

    by_tier = {tier: round(amount, 4) for tier, amount in by_tier.items()}
    return round(sum(by_tier.values()), 4), by_tier
