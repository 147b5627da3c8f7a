import pytest

from combination_generator import count_combinations, generate_unique_assignments, selectable_traits
from errors import CombinationRetryExhausted, InsufficientCombinationSpace
from trait_catalog import NONE_TRAIT, TraitCatalog


def exclusive_catalog(extra_options=1):
    return TraitCatalog.from_dict({
        'layer_order': ['skin', 'shirt', 'jacket', 'background'],
        'required': ['skin'],
        'exclusive_groups': [['shirt', 'jacket']],
        'traits': {
            'skin': [{'name': 'Green', 'file': 's.png'}],
            'shirt': [{'name': 'None'}, {'name': 'Tee', 'file': 't.png'}, {'name': 'Polo', 'file': 'p.png'}],
            'jacket': [{'name': 'None'}, {'name': 'Parka', 'file': 'k.png'}, {'name': 'Suit', 'file': 'u.png'}],
            'background': [{'name': f"Bg {i}", 'file': f"bg{i}.png"} for i in range(extra_options)],
        },
    })


def test_count_combinations_small_catalog(small_catalog):
    # background 3 x skin 2 (None not allowed) x hat 3
    assert count_combinations(small_catalog) == 18


def test_count_combinations_respects_exclusive_groups():
    # all-None + 2 shirts + 2 jackets
    assert count_combinations(exclusive_catalog()) == 5
    assert count_combinations(exclusive_catalog(extra_options=50)) == 250


@pytest.mark.parametrize('count', [1, 5, 9, 17, 18])
def test_generates_exactly_n_distinct(small_catalog, count):
    assignments = generate_unique_assignments(small_catalog, count, seed=7)
    assert len(assignments) == count
    assert len({a.canonical_key() for a in assignments}) == count


def test_full_space_is_reachable(collection_catalog):
    assignments = generate_unique_assignments(collection_catalog, 180, seed=1)
    assert len(set(assignments)) == 180


def test_sparse_request_uses_every_category(collection_catalog):
    assignments = generate_unique_assignments(collection_catalog, 40, seed=3)
    assert len(set(assignments)) == 40
    for a in assignments:
        assert list(a) == collection_catalog.layer_order()


def test_oversized_request_fails_with_no_output(small_catalog):
    with pytest.raises(InsufficientCombinationSpace) as excinfo:
        generate_unique_assignments(small_catalog, 19, seed=1)
    assert excinfo.value.requested == 19
    assert excinfo.value.available == 18


@pytest.mark.parametrize('count', [0, -3])
def test_non_positive_size_rejected(small_catalog, count):
    with pytest.raises(ValueError):
        generate_unique_assignments(small_catalog, count)


def test_seed_makes_generation_reproducible(collection_catalog):
    first = generate_unique_assignments(collection_catalog, 30, seed=42)
    second = generate_unique_assignments(collection_catalog, 30, seed=42)
    assert [a.canonical_key() for a in first] == [a.canonical_key() for a in second]


def test_required_categories_never_none(collection_catalog):
    for a in generate_unique_assignments(collection_catalog, 60, seed=5):
        assert a['skin'] != NONE_TRAIT
        assert a['eyes'] != NONE_TRAIT


@pytest.mark.parametrize('extra_options,count', [(1, 5), (50, 20), (50, 200)])
def test_exclusive_groups_hold_one_populated_member(extra_options, count):
    catalog = exclusive_catalog(extra_options)
    assignments = generate_unique_assignments(catalog, count, seed=11)
    assert len(set(assignments)) == count
    for a in assignments:
        assert not (a['shirt'] != NONE_TRAIT and a['jacket'] != NONE_TRAIT)


def test_zero_weight_traits_are_never_selected():
    catalog = TraitCatalog.from_dict({
        'layer_order': ['hat', 'eyes'],
        'traits': {
            'hat': [{'name': 'None', 'weight': 0}, {'name': 'Cap', 'file': 'c.png', 'weight': 50},
                    {'name': 'Crown', 'file': 'k.png'}],
            'eyes': [{'name': f"E{i}", 'file': f"e{i}.png"} for i in range(10)],
        },
    })
    assert [t.name for t in selectable_traits(catalog, 'hat')] == ['Cap', 'Crown']
    assert count_combinations(catalog) == 20

    assignments = generate_unique_assignments(catalog, 20, seed=2)
    assert {a['hat'] for a in assignments} == {'Cap', 'Crown'}


def test_weighted_sparse_draws_stay_unique():
    catalog = TraitCatalog.from_dict({
        'layer_order': ['overlay', 'eyes'],
        'traits': {
            'overlay': [{'name': 'None', 'weight': 800}, {'name': 'Burger', 'file': 'b.png', 'weight': 100}],
            'eyes': [{'name': f"E{i}", 'file': f"e{i}.png"} for i in range(100)],
        },
    })
    assignments = generate_unique_assignments(catalog, 50, seed=9)
    assert len(set(assignments)) == 50


def test_retry_budget_exhaustion_is_fatal():
    catalog = TraitCatalog.from_dict({
        'layer_order': ['mood', 'eyes'],
        'traits': {
            'mood': [{'name': 'Calm', 'file': 'c.png', 'weight': 1e9}, {'name': 'Rare', 'file': 'r.png', 'weight': 1}],
            'eyes': [{'name': f"E{i}", 'file': f"e{i}.png"} for i in range(10)],
        },
    })
    with pytest.raises(CombinationRetryExhausted) as excinfo:
        generate_unique_assignments(catalog, 10, seed=4, max_attempts_per_token=1)
    assert isinstance(excinfo.value, InsufficientCombinationSpace)
    assert excinfo.value.generated < 10
