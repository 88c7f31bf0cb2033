import math
import random

import pytest

from packing import (
    Row,
    RowJustifiedPacker,
    accumulate_rows,
    finalize_row,
    group_rows,
    layout_height,
    pack,
    partition_pinned,
    resolve_aspect_ratio,
)


def _items(ratios, **extra):
    return [{"id": f"i{n}", "aspect_ratio": r, **extra} for n, r in enumerate(ratios)]


def _random_items(seed, count=60):
    rng = random.Random(seed)
    return _items([rng.choice([0.5, 0.75, 1.0, 1.33, 1.5, 1.78, 2.4]) for _ in range(count)])


def test_two_rows_example():
    placed = pack(_items([2.0, 1.0, 1.0]), 400, 150)

    assert [p["id"] for p in placed] == ["i0", "i1", "i2"]
    first, second, third = placed
    assert (first["x"], first["y"], first["width"], first["height"]) == (0, 0, 266, 133)
    assert (second["x"], second["y"], second["width"], second["height"]) == (266, 0, 133, 133)
    assert not first["is_last_row"] and not second["is_last_row"]

    # Trailing row keeps the target height and is left-aligned
    assert (third["x"], third["y"], third["width"], third["height"]) == (0, 133, 150, 150)
    assert third["is_last_row"]


def test_height_equal_to_target_keeps_accumulating():
    # Five squares hit exactly 100px; the row stays open and becomes the trailing row
    placed = pack(_items([1.0] * 5), 500, 100)
    assert all(p["is_last_row"] for p in placed)
    assert [p["x"] for p in placed] == [0, 100, 200, 300, 400]

    # A sixth square would make the row too short, so the break falls before it
    placed = pack(_items([1.0] * 6), 500, 100)
    rows = group_rows(placed)
    assert [len(r) for r in rows] == [5, 1]
    assert all(not p["is_last_row"] for p in rows[0])
    assert all(p["height"] == 100 and p["width"] == 100 for p in rows[0])
    assert rows[1][0]["y"] == 100
    assert rows[1][0]["is_last_row"]


def test_break_before_item_when_shorter_row_is_closer():
    placed = pack(_items([1.0, 1.0, 1.0]), 300, 140)
    rows = group_rows(placed)
    assert [len(r) for r in rows] == [2, 1]
    assert [p["width"] for p in rows[0]] == [150, 150]
    assert rows[0][0]["height"] == 150
    assert (rows[1][0]["y"], rows[1][0]["height"], rows[1][0]["width"]) == (150, 140, 140)


def test_threshold_policy_cuts_after_reaching_target():
    placed = pack(_items([1.0, 1.0, 1.0]), 300, 140, row_break="threshold")
    assert [p["width"] for p in placed] == [100, 100, 100]
    assert all(p["height"] == 100 and not p["is_last_row"] for p in placed)

    placed = pack(_items([1.0] * 5), 500, 100, row_break="threshold")
    assert all(not p["is_last_row"] for p in placed)


def test_single_wide_item_closes_its_own_row():
    placed = pack(_items([4.0]), 400, 150)
    assert len(placed) == 1
    assert (placed[0]["width"], placed[0]["height"]) == (400, 100)
    assert not placed[0]["is_last_row"]


def test_carried_item_wide_enough_closes_row_immediately():
    placed = pack(_items([2.5, 3.0]), 400, 150)
    first, second = placed
    assert (first["y"], first["width"], first["height"]) == (0, 400, 160)
    assert second["y"] == 160
    assert second["height"] == 133
    assert second["width"] in (399, 400)
    assert not first["is_last_row"] and not second["is_last_row"]


def test_empty_input():
    assert pack([], 400, 150) == []
    assert layout_height([]) == 0
    assert group_rows([]) == []


def test_pinned_items_come_first():
    items = [
        {"id": "a"},
        {"id": "b", "pinned": True},
        {"id": "c"},
        {"id": "d", "pinned": True},
    ]
    assert [i["id"] for i in partition_pinned(items)] == ["b", "d", "a", "c"]
    assert [p["id"] for p in pack(items, 800, 200)] == ["b", "d", "a", "c"]


def test_partition_without_pinned_is_identity():
    items = _items([1.0, 2.0, 0.5])
    assert partition_pinned(items) == items


@pytest.mark.parametrize(
    "item, expected",
    [
        ({"aspect_ratio": 1.5}, 1.5),
        ({"width": 300, "height": 200}, 1.5),
        ({"aspect_ratio": 0, "width": 100, "height": 400}, 0.25),
        ({"width": 300, "height": 0}, 1.0),
        ({"width": -300, "height": 200}, 1.0),
        ({"aspect_ratio": -2}, 1.0),
        ({"aspect_ratio": float("nan")}, 1.0),
        ({"aspect_ratio": "wide"}, 1.0),
        ({}, 1.0),
    ],
)
def test_resolve_aspect_ratio(item, expected):
    assert resolve_aspect_ratio(item) == pytest.approx(expected)


def test_text_item_without_dimensions_is_measured():
    # 4 chars * 20 * 0.6 wide, 20 * 1.5 tall
    item = {"type": "text", "content": "abcd", "style": {"fontSize": 20}}
    assert resolve_aspect_ratio(item) == pytest.approx(1.6)
    # Explicit dimensions win over measurement
    item = {"type": "text", "content": "abcd", "width": 100, "height": 100}
    assert resolve_aspect_ratio(item) == pytest.approx(1.0)


def test_payload_is_passed_through_and_input_untouched():
    items = [
        {"id": "p", "src": "photos/p.jpg", "width": 1200, "height": 800, "style": {"border": 1}},
        {"id": "t", "type": "text", "content": "hello", "aspect_ratio": 2.0},
    ]
    snapshot = [dict(i) for i in items]
    placed = pack(items, 600, 200)

    assert items == snapshot
    assert placed[0]["src"] == "photos/p.jpg"
    assert placed[0]["style"] == {"border": 1}
    assert placed[0]["aspect_ratio"] == pytest.approx(1.5)
    assert placed[1]["content"] == "hello"


@pytest.mark.parametrize("gutter", [0, 8])
def test_row_invariants(gutter):
    width = 1000
    placed = pack(_random_items(7), width, 180, gutter=gutter)
    rows = group_rows(placed)
    assert len(rows) > 2

    for row in rows:
        heights = {p["height"] for p in row}
        assert len(heights) == 1
        for left, right in zip(row, row[1:]):
            assert left["x"] + left["width"] + gutter == right["x"]
        if not row[0]["is_last_row"]:
            used = sum(p["width"] for p in row) + gutter * (len(row) - 1)
            assert width - len(row) <= used <= width

    for previous, current in zip(rows, rows[1:]):
        assert current[0]["y"] == previous[0]["y"] + previous[0]["height"] + gutter

    assert [r[0]["is_last_row"] for r in rows].count(True) <= 1
    assert not any(r[0]["is_last_row"] for r in rows[:-1])


def test_snap_last_to_edge_fills_width():
    placed = pack(_items([2.0, 1.0]), 400, 150, snap_last_to_edge=True)
    assert [p["width"] for p in placed] == [266, 134]

    width = 1000
    placed = pack(_random_items(11), width, 180, gutter=6, snap_last_to_edge=True)
    for row in group_rows(placed):
        if row[0]["is_last_row"]:
            continue
        assert sum(p["width"] for p in row) + 6 * (len(row) - 1) == width


def test_snap_does_not_touch_last_row():
    placed = pack(_items([2.0, 1.0, 1.0]), 400, 150, snap_last_to_edge=True)
    assert placed[-1]["width"] == 150


def test_gutter_reduces_row_height():
    placed = pack(_items([1.0, 1.0, 1.0]), 420, 150, gutter=10)
    assert [p["x"] for p in placed] == [0, 143, 286]
    assert all(p["width"] == 133 and p["height"] == 133 for p in placed)


def test_last_row_cap_multiplier():
    # Natural height 400 is above 1.5 * 150, so the target is used
    placed = pack(_items([2.0, 1.0, 1.0]), 400, 150, last_row_cap_multiplier=1.5)
    assert (placed[-1]["width"], placed[-1]["height"]) == (150, 150)

    placed = pack(_items([2.0, 1.0, 1.0]), 400, 150, last_row_cap_multiplier=3)
    assert (placed[-1]["width"], placed[-1]["height"]) == (400, 400)

    # Natural height 200 is within the cap and fills the width
    placed = pack(_items([2.5, 3.0, 2.0]), 400, 150, last_row_cap_multiplier=1.5)
    assert (placed[-1]["width"], placed[-1]["height"]) == (400, 200)
    placed = pack(_items([2.5, 3.0, 2.0]), 400, 150)
    assert (placed[-1]["width"], placed[-1]["height"]) == (300, 150)


def test_repacking_output_is_idempotent():
    geometry = lambda placed: [(p["id"], p["x"], p["y"], p["width"], p["height"], p["is_last_row"]) for p in placed]

    placed = pack(_random_items(3), 900, 160, gutter=4)
    assert geometry(pack(placed, 900, 160, gutter=4)) == geometry(placed)

    # Ratios re-derived from the output sizes
    placed = pack(_items([1.0] * 7), 600, 200)
    stripped = [{k: v for k, v in p.items() if k != "aspect_ratio"} for p in placed]
    assert geometry(pack(stripped, 600, 200)) == geometry(placed)


def test_accumulate_rows_streams_rows():
    entries = [({"id": n}, r) for n, r in enumerate([2.0, 1.0, 1.0])]
    rows = list(accumulate_rows(entries, 400, 150))
    assert [len(r) for r in rows] == [2, 1]
    assert rows[0].aspect_sum == pytest.approx(3.0)
    assert not rows[0].is_last_row
    assert rows[1].is_last_row


def test_finalize_row_uses_row_offset():
    row = Row([({"id": "a"}, 1.0), ({"id": "b"}, 1.0)], 2.0)
    row.y = 57
    placed, height = finalize_row(row, 300, 200)
    assert height == 150
    assert [(p["x"], p["y"]) for p in placed] == [(0, 57), (150, 57)]


def test_layout_height_is_bottom_edge():
    placed = pack(_items([2.0, 1.0, 1.0]), 400, 150)
    assert layout_height(placed) == 283


def test_extreme_aspect_ratios():
    placed = pack(_items([50.0, 0.02, 1.0, 0.02, 50.0]), 800, 200)
    assert len(placed) == 5
    assert all(p["width"] >= 1 and p["height"] >= 1 for p in placed)
    assert all(math.isfinite(p["x"]) and math.isfinite(p["y"]) for p in placed)


def test_narrow_items_never_push_row_past_container():
    # A third sliver would floor to 0px, so the row is cut before it
    placed = pack(_items([0.01] * 3), 10, 5, gutter=4)
    rows = group_rows(placed)
    assert [len(r) for r in rows] == [2, 1]
    assert not rows[0][0]["is_last_row"]
    assert [(p["x"], p["width"]) for p in rows[0]] == [(0, 3), (7, 3)]
    assert sum(p["width"] for p in rows[0]) + 4 == 10
    assert rows[1][0]["is_last_row"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"container_width": 0, "target_row_height": 150},
        {"container_width": -10, "target_row_height": 150},
        {"container_width": float("inf"), "target_row_height": 150},
        {"container_width": float("nan"), "target_row_height": 150},
        {"container_width": 400, "target_row_height": 0},
        {"container_width": 400, "target_row_height": 150, "gutter": -1},
        {"container_width": 400, "target_row_height": 150, "last_row_cap_multiplier": 0},
        {"container_width": 400, "target_row_height": 150, "last_row_cap_multiplier": "1.5"},
        {"container_width": 400, "target_row_height": 150, "row_break": "lookahead"},
    ],
)
def test_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        RowJustifiedPacker(**kwargs)
    with pytest.raises(ValueError):
        pack([], **kwargs)
