import random
from typing import Iterable, Sequence

from gateway_app.db_models import Source


def supports_model(source: Source, model_id: str) -> bool:
    models = source.models
    if not models:
        return True
    return model_id in models


def weighted_pick(sources: Sequence[Source], rng: random.Random | None = None) -> Source:
    if len(sources) == 1:
        return sources[0]

    rng = rng or random
    total_weight = sum(source.weight for source in sources)
    remainder = rng.random() * total_weight
    for source in sources:
        remainder -= source.weight
        if remainder <= 0:
            return source
    return sources[-1]


def select_source(
    sources: Iterable[Source],
    model_id: str,
    rng: random.Random | None = None,
) -> Source | None:
    """
    Picks the upstream for a model: highest priority tier first, then a
    weighted random draw inside that tier. Lower tiers are never used as a
    fallback within the same request.
    """
    candidates = [
        source
        for source in sources
        if source.is_enabled and supports_model(source, model_id)
    ]
    if not candidates:
        return None

    candidates.sort(key=lambda source: source.priority, reverse=True)
    top_priority = candidates[0].priority
    top_tier = [source for source in candidates if source.priority == top_priority]
    return weighted_pick(top_tier, rng)
