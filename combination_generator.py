"""
Unique trait combination generator.

Produces N distinct TraitAssignments for a collection of size N. The whole
space is sized up front so an impossible request fails before any output is
produced.
"""

import heapq
import itertools
import logging
import random
from typing import Dict, List, Optional, Sequence, Set

from errors import CombinationRetryExhausted, InsufficientCombinationSpace
from settings import EXHAUSTIVE_SPACE_LIMIT, MAX_ATTEMPTS_PER_TOKEN
from trait_catalog import NONE_TRAIT, TraitAssignment, TraitCatalog, TraitDefinition

logger = logging.getLogger(__name__)

# Weight given to traits without one in a category that uses weights.
DEFAULT_TRAIT_WEIGHT = 100.0


def _is_weighted(options: Sequence[TraitDefinition]) -> bool:
    return any(t.weight is not None for t in options)


def _weight_of(trait: TraitDefinition, weighted: bool) -> float:
    if not weighted:
        return 1.0
    return float(trait.weight) if trait.weight is not None else DEFAULT_TRAIT_WEIGHT


def selectable_traits(catalog: TraitCatalog, category: str) -> List[TraitDefinition]:
    """Traits that can actually be drawn for ``category``."""
    options = catalog.list_traits(category)
    if category in catalog.required_categories:
        options = [t for t in options if not t.is_none]
    weighted = _is_weighted(options)
    return [t for t in options if _weight_of(t, weighted) > 0]


def count_combinations(catalog: TraitCatalog) -> int:
    """Exact number of distinct assignments the catalog can produce."""
    options = {c: selectable_traits(catalog, c) for c in catalog.layer_order()}
    grouped = {c for group in catalog.exclusive_groups for c in group}

    total = 1
    for category in catalog.layer_order():
        if category not in grouped:
            total *= len(options[category])

    for group in catalog.exclusive_groups:
        has_none = {c: int(any(t.is_none for t in options[c])) for c in group}
        populated = {c: sum(1 for t in options[c] if not t.is_none) for c in group}
        group_total = 1
        for c in group:
            group_total *= has_none[c]
        for c in group:
            term = populated[c]
            for other in group:
                if other != c:
                    term *= has_none[other]
            group_total += term
        total *= group_total

    return total


def _raw_product_size(options: Dict[str, List[TraitDefinition]]) -> int:
    size = 1
    for traits in options.values():
        size *= len(traits)
    return size


def _satisfies_groups(catalog: TraitCatalog, traits: Dict[str, str]) -> bool:
    for group in catalog.exclusive_groups:
        if sum(1 for c in group if traits.get(c, NONE_TRAIT) != NONE_TRAIT) > 1:
            return False
    return True


def _resolve_exclusive_groups(catalog: TraitCatalog, traits: Dict[str, str],
                              options: Dict[str, List[TraitDefinition]], rng: random.Random) -> None:
    """Keep only one populated category per exclusive group."""
    for group in catalog.exclusive_groups:
        active = [c for c in group if traits[c] != NONE_TRAIT]
        if len(active) <= 1:
            continue
        fixed = [c for c in active if not any(t.is_none for t in options[c])]
        keep = fixed[0] if fixed else rng.choice(active)
        for c in active:
            if c != keep:
                traits[c] = NONE_TRAIT


def _draw_candidate(catalog: TraitCatalog, options: Dict[str, List[TraitDefinition]],
                    rng: random.Random) -> TraitAssignment:
    traits: Dict[str, str] = {}
    for category in catalog.layer_order():
        choices = options[category]
        weighted = _is_weighted(choices)
        if weighted:
            pick = rng.choices(choices, weights=[_weight_of(t, True) for t in choices])[0]
        else:
            pick = rng.choice(choices)
        traits[category] = pick.name
    _resolve_exclusive_groups(catalog, traits, options, rng)
    return TraitAssignment.from_mapping(traits, catalog.layer_order())


def _sample_exhaustive(catalog: TraitCatalog, options: Dict[str, List[TraitDefinition]],
                       count: int, rng: random.Random) -> List[TraitAssignment]:
    """Enumerate every valid combination and sample ``count`` without replacement."""
    order = catalog.layer_order()
    weighted = {c: _is_weighted(options[c]) for c in order}
    any_weighted = any(weighted.values())

    space = []
    weights = []
    for combo in itertools.product(*(options[c] for c in order)):
        traits = {t.category: t.name for t in combo}
        if not _satisfies_groups(catalog, traits):
            continue
        space.append(TraitAssignment.from_mapping(traits, order))
        if any_weighted:
            w = 1.0
            for t in combo:
                w *= _weight_of(t, weighted[t.category])
            weights.append(w)

    if not any_weighted:
        return rng.sample(space, count)

    # Weighted sampling without replacement (Efraimidis-Spirakis keys).
    keyed = ((rng.random() ** (1.0 / w), i) for i, w in enumerate(weights))
    return [space[i] for _, i in heapq.nlargest(count, keyed)]


def generate_unique_assignments(
    catalog: TraitCatalog,
    count: int,
    seed: Optional[int] = None,
    max_attempts_per_token: int = MAX_ATTEMPTS_PER_TOKEN,
) -> List[TraitAssignment]:
    """
    Return ``count`` distinct assignments drawn from ``catalog``.

    Raises:
        ValueError: If count is not positive.
        InsufficientCombinationSpace: If count exceeds the distinct space, or
            the per-token retry budget is exhausted (CombinationRetryExhausted).
    """
    if count <= 0:
        raise ValueError("Collection size must be a positive integer")

    space = count_combinations(catalog)
    if count > space:
        logger.error(f"Cannot generate {count} unique combinations, catalog supports {space}")
        raise InsufficientCombinationSpace(count, space)

    rng = random.Random(seed)
    options = {c: selectable_traits(catalog, c) for c in catalog.layer_order()}

    if count * 2 > space and _raw_product_size(options) <= EXHAUSTIVE_SPACE_LIMIT:
        logger.info(f"Dense request ({count}/{space}), sampling from the enumerated space")
        return _sample_exhaustive(catalog, options, count, rng)

    collection: List[TraitAssignment] = []
    seen: Set[str] = set()
    total_attempts = 0
    while len(collection) < count:
        for attempt in range(1, max_attempts_per_token + 1):
            candidate = _draw_candidate(catalog, options, rng)
            key = candidate.canonical_key()
            if key not in seen:
                seen.add(key)
                collection.append(candidate)
                total_attempts += attempt
                break
        else:
            logger.error(
                f"Only generated {len(collection)}/{count} unique combinations "
                f"after {max_attempts_per_token} attempts for the next token"
            )
            raise CombinationRetryExhausted(count, space, len(collection), max_attempts_per_token)

    logger.info(f"Generated {count} unique combinations in {total_attempts} draws (space {space})")
    return collection
