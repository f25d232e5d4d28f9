from datetime import UTC, datetime

import pytest

from app.core.errors import UpstreamFormatError
from conftest import NOW, sample_mahadashas
from refactor.dasha import subdivide
from refactor.dasha_tree import (
    FOCUSED_DEPTH,
    ORIGIN_CALCULATED,
    NestedShape,
    PeriodArena,
    balance,
    extract_active_path,
    extract_period_list,
)


def _levels_below(arena: PeriodArena, index: int) -> int:
    node = arena.nodes[index]
    if not node.children:
        return node.level
    return max(_levels_below(arena, child) for child in node.children)


def test_arena_addresses_nodes_by_level_and_position():
    arena = PeriodArena.from_payload({"dasha_list": sample_mahadashas()})

    assert len(arena) == 3
    assert arena.node_at(1, 1).planet == "Saturn"
    assert arena.node_at(2, 0) is None
    assert arena.depth() == 1


@pytest.mark.parametrize("shape", [s for s in NestedShape if s is not NestedShape.DASHA_LIST])
def test_known_nested_shapes_are_read(shape):
    parent = sample_mahadashas()[0]
    children = [p.to_dict() for p in subdivide("Jupiter", parent["start_date"], 16)]
    parent[shape.value] = children

    arena = PeriodArena.from_payload([parent])
    assert [n.planet for n in arena.children_of(arena.roots[0])][:2] == ["Jupiter", "Saturn"]
    # Re-serialized under the canonical key
    assert "sublevels" in arena.to_payload()["dasha_list"][0]


def test_unknown_nested_key_raises_format_error():
    parent = sample_mahadashas()[0]
    parent["bhuktis"] = [{"planet": "Jupiter", "start_date": "2006-01-01T00:00:00Z", "duration_years": 2}]

    with pytest.raises(UpstreamFormatError):
        PeriodArena.from_payload([parent])


def test_envelope_variants_are_located():
    entries = sample_mahadashas()
    for payload in (
        entries,
        {"dasha_list": entries},
        {"mahadashas": entries, "system": "lahiri"},
        {"data": {"dasha_list": entries}},
    ):
        found, _ = extract_period_list(payload)
        assert len(found) == 3

    with pytest.raises(UpstreamFormatError):
        extract_period_list({"periods": entries})


def test_entry_without_start_is_rejected():
    with pytest.raises(UpstreamFormatError):
        PeriodArena.from_payload([{"planet": "Sun", "duration_years": 6}])


def test_balance_expands_inactive_branches_to_default_depth():
    arena = PeriodArena.from_payload({"dasha_list": sample_mahadashas()})
    assert balance(arena, min_depth_default=3, now=NOW) is True

    jupiter, saturn, mercury = arena.roots
    assert _levels_below(arena, jupiter) == 3
    assert _levels_below(arena, mercury) == 3
    # The active branch goes deeper
    assert _levels_below(arena, saturn) == FOCUSED_DEPTH
    assert arena.nodes[arena.nodes[jupiter].children[0]].origin == ORIGIN_CALCULATED


def test_balance_follows_target_path_only_on_matched_branch():
    arena = PeriodArena.from_payload({"dasha_list": sample_mahadashas()})
    balance(arena, min_depth_default=2, target_path=("Mercury", "Venus"), now=NOW)

    mercury = arena.roots[2]
    children = {arena.nodes[c].planet: c for c in arena.nodes[mercury].children}
    # The targeted child is subdivided even though it is below the default depth
    assert _levels_below(arena, children["Venus"]) == 3
    # Sibling of the targeted child stays at the default depth
    assert _levels_below(arena, children["Sun"]) == 2
    assert arena.nodes[children["Sun"]].children == []
    # "Venus" does not leak into the Jupiter branch
    jupiter = arena.roots[0]
    assert _levels_below(arena, jupiter) == 2


def test_balance_is_idempotent():
    arena = PeriodArena.from_payload({"dasha_list": sample_mahadashas()})
    balance(arena, now=NOW)
    size = len(arena)

    assert balance(arena, now=NOW) is False
    assert len(arena) == size


def test_round_trip_preserves_origin_and_extra_fields():
    entries = sample_mahadashas()
    entries[0]["nakshatra"] = "Punarvasu"
    arena = PeriodArena.from_payload({"dasha_list": entries, "system": "lahiri"})
    balance(arena, min_depth_default=2, now=NOW)

    reloaded = PeriodArena.from_payload(arena.to_payload())
    assert reloaded.envelope["system"] == "lahiri"
    assert reloaded.nodes[reloaded.roots[0]].extra["nakshatra"] == "Punarvasu"
    first_child = reloaded.children_of(reloaded.roots[0])[0]
    assert first_child.origin == ORIGIN_CALCULATED
    assert len(reloaded) == len(arena)


def test_tree_deeper_than_six_levels_rejected():
    entry = {"planet": "Sun", "start_date": "2000-01-01T00:00:00Z", "duration_years": 6}
    node = entry
    for _ in range(6):
        child = {"planet": "Sun", "start_date": "2000-01-01T00:00:00Z", "duration_years": 1}
        node["sublevels"] = [child]
        node = child

    with pytest.raises(UpstreamFormatError):
        PeriodArena.from_payload([entry])


def test_active_path_walks_five_levels_without_mutation():
    arena = PeriodArena.from_payload({"dasha_list": sample_mahadashas()})
    chain = extract_active_path(arena, now=NOW)

    assert [node.level for node in chain] == [1, 2, 3, 4, 5]
    assert chain[0].planet == "Saturn"
    assert chain[0].origin == "fetched"
    assert chain[1].origin == ORIGIN_CALCULATED
    for node in chain:
        assert node.start <= NOW < node.end
    assert len(arena) == 3


def test_active_path_empty_outside_tree():
    arena = PeriodArena.from_payload({"dasha_list": sample_mahadashas()})
    assert extract_active_path(arena, now=datetime(1900, 1, 1, tzinfo=UTC)) == []
