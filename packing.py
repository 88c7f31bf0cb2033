"""
Row-justified packing
Lays out items of varying aspect ratio into rows that exactly fill a container width
"""

import logging
import math
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ROW_BREAK_CLOSEST = "closest"
ROW_BREAK_THRESHOLD = "threshold"
ROW_BREAK_POLICIES = (ROW_BREAK_CLOSEST, ROW_BREAK_THRESHOLD)

# Text blocks without dimensions are sized the way the editor measures them
DEFAULT_TEXT_FONT_SIZE = 24.0
TEXT_WIDTH_PER_CHAR = 0.6
TEXT_LINE_HEIGHT = 1.5

# Row decisions
_KEEP = "keep"
_INCLUDE = "include"
_EXCLUDE = "exclude"

Entry = Tuple[Dict[str, Any], float]


def _positive(value: Any) -> Optional[float]:
    """Return value as a finite positive float, or None"""
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isfinite(number) and number > 0:
        return number
    return None


def text_dimensions(content: str, font_size: float = DEFAULT_TEXT_FONT_SIZE) -> Tuple[float, float]:
    """Approximate (width, height) of a single-line text block"""
    return len(content) * font_size * TEXT_WIDTH_PER_CHAR, font_size * TEXT_LINE_HEIGHT


def resolve_aspect_ratio(item: Mapping[str, Any]) -> float:
    """Resolve an item's width / height ratio.

    Order of precedence:
    - an explicit, usable ``aspect_ratio``
    - ``width / height`` when both are finite and > 0
    - for text items, the measured size of ``content``
    - 1.0

    Zero, negative, missing or non-numeric sources never propagate.
    """
    ratio = _positive(item.get("aspect_ratio"))
    if ratio is not None:
        return ratio

    width = _positive(item.get("width"))
    height = _positive(item.get("height"))
    if width is not None and height is not None:
        ratio = _positive(width / height)
        if ratio is not None:
            return ratio

    content = item.get("content")
    if item.get("type") == "text" and isinstance(content, str) and content:
        style = item.get("style")
        font_size = None
        if isinstance(style, Mapping):
            font_size = _positive(style.get("fontSize"))
        text_w, text_h = text_dimensions(content, font_size or DEFAULT_TEXT_FONT_SIZE)
        ratio = _positive(text_w / text_h)
        if ratio is not None:
            return ratio

    return 1.0


def partition_pinned(items: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Stable partition: pinned items first, then the rest, each in original order"""
    pinned = []
    unpinned = []
    for item in items:
        if item.get("pinned"):
            pinned.append(item)
        else:
            unpinned.append(item)
    return pinned + unpinned


class Row:
    """A run of items that will share one row height"""

    def __init__(self, entries: List[Entry], aspect_sum: float, is_last_row: bool = False):
        self.entries = entries
        self.aspect_sum = aspect_sum
        self.is_last_row = is_last_row
        self.y = 0

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"Row(items={len(self.entries)}, aspect_sum={self.aspect_sum:.3f}, last={self.is_last_row})"


def _available_width(container_width: float, gutter: float, count: int) -> float:
    return container_width - gutter * max(0, count - 1)


def _row_height(container_width: float, gutter: float, count: int, aspect_sum: float) -> float:
    if count == 0 or aspect_sum <= 0:
        return math.inf
    return _available_width(container_width, gutter, count) / aspect_sum


def _validate(
    container_width: float,
    target_row_height: float,
    gutter: float,
    last_row_cap_multiplier: Optional[float] = None,
    row_break: str = ROW_BREAK_CLOSEST,
) -> None:
    if not isinstance(container_width, (int, float)) or not math.isfinite(container_width) or container_width <= 0:
        raise ValueError("container_width must be a finite number > 0")
    if not isinstance(target_row_height, (int, float)) or not math.isfinite(target_row_height) or target_row_height <= 0:
        raise ValueError("target_row_height must be a finite number > 0")
    if not isinstance(gutter, (int, float)) or not math.isfinite(gutter) or gutter < 0:
        raise ValueError("gutter must be >= 0")
    if last_row_cap_multiplier is not None and (
        not isinstance(last_row_cap_multiplier, (int, float))
        or not math.isfinite(last_row_cap_multiplier)
        or last_row_cap_multiplier <= 0
    ):
        raise ValueError("last_row_cap_multiplier must be > 0")
    if row_break not in ROW_BREAK_POLICIES:
        raise ValueError(f"row_break must be one of {', '.join(ROW_BREAK_POLICIES)}")


def accumulate_rows(
    entries: Iterable[Entry],
    container_width: float,
    target_row_height: float,
    gutter: float = 0,
    row_break: str = ROW_BREAK_CLOSEST,
) -> Iterator[Row]:
    """Split (item, aspect_ratio) entries into rows.

    With the ``closest`` policy a row grows while its height stays at or above
    the target. Once an item would push the height below the target, the row
    is cut either before or after that item, whichever height lands nearer the
    target (ties cut before). An item carried over to a fresh row is offered
    again against the empty buffer, so an item that is wide enough on its own
    closes its row immediately.

    With the ``threshold`` policy the row is cut after the first item that
    brings the height to the target or below.

    Leftover items are yielded last as a row with ``is_last_row`` set.

    A row is also cut before an item when adding it would shrink the
    narrowest item below one pixel, so floored widths plus gutters never
    exceed the container.
    """

    def decide(count: int, aspect_sum: float, ratio: float, narrowest: float) -> str:
        height = _row_height(container_width, gutter, count + 1, aspect_sum + ratio)
        if count and height <= 0:
            # Gutters alone would overflow the container
            return _EXCLUDE
        if count and math.floor(height * min(narrowest, ratio)) < 1:
            return _EXCLUDE
        if row_break == ROW_BREAK_THRESHOLD:
            return _KEEP if height > target_row_height else _INCLUDE
        if height >= target_row_height:
            return _KEEP
        if not count:
            return _INCLUDE
        previous = _row_height(container_width, gutter, count, aspect_sum)
        if abs(previous - target_row_height) <= abs(height - target_row_height):
            return _EXCLUDE
        return _INCLUDE

    buffer: List[Entry] = []
    aspect_sum = 0.0
    narrowest = math.inf

    for entry in entries:
        ratio = entry[1]
        decision = decide(len(buffer), aspect_sum, ratio, narrowest)

        if decision == _KEEP:
            buffer.append(entry)
            aspect_sum += ratio
            narrowest = min(narrowest, ratio)
            continue

        if decision == _INCLUDE:
            buffer.append(entry)
            yield Row(buffer, aspect_sum + ratio)
            buffer = []
            aspect_sum = 0.0
            narrowest = math.inf
            continue

        yield Row(buffer, aspect_sum)
        if decide(0, 0.0, ratio, math.inf) == _KEEP:
            buffer = [entry]
            aspect_sum = ratio
            narrowest = ratio
        else:
            yield Row([entry], ratio)
            buffer = []
            aspect_sum = 0.0
            narrowest = math.inf

    if buffer:
        yield Row(buffer, aspect_sum, is_last_row=True)


def finalize_row(
    row: Row,
    container_width: float,
    target_row_height: float,
    gutter: float = 0,
    snap_last_to_edge: bool = False,
    last_row_cap_multiplier: Optional[float] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """Place the items of one row starting at ``row.y``.

    Returns (placed_items, row_height). Sizes are floored so a justified row
    never overflows the container; the leftover fraction of a pixel per item is
    left as slack unless ``snap_last_to_edge`` stretches the last item.
    """
    count = len(row.entries)
    if count == 0:
        return [], 0

    available = _available_width(container_width, gutter, count)
    if row.is_last_row:
        row_height = float(target_row_height)
        if last_row_cap_multiplier is not None:
            natural = available / row.aspect_sum
            if natural <= target_row_height * last_row_cap_multiplier:
                row_height = natural
    else:
        row_height = available / row.aspect_sum

    height = max(1, math.floor(row_height))
    placed: List[Dict[str, Any]] = []
    x = 0
    for index, (item, ratio) in enumerate(row.entries):
        width = max(1, math.floor(row_height * ratio))
        if snap_last_to_edge and not row.is_last_row and index == count - 1:
            width = max(1, math.floor(container_width - x))

        placed_item = dict(item)
        placed_item.update({
            "aspect_ratio": ratio,
            "x": x,
            "y": row.y,
            "width": width,
            "height": height,
            "is_last_row": row.is_last_row,
        })
        placed.append(placed_item)
        x += width + gutter

    return placed, height


class RowJustifiedPacker:
    """Packs items into justified rows for a fixed container and options"""

    def __init__(
        self,
        container_width: float,
        target_row_height: float,
        gutter: float = 0,
        snap_last_to_edge: bool = False,
        last_row_cap_multiplier: Optional[float] = None,
        row_break: str = ROW_BREAK_CLOSEST,
    ):
        _validate(container_width, target_row_height, gutter, last_row_cap_multiplier, row_break)
        self.container_width = container_width
        self.target_row_height = target_row_height
        self.gutter = gutter
        self.snap_last_to_edge = snap_last_to_edge
        self.last_row_cap_multiplier = last_row_cap_multiplier
        self.row_break = row_break

    def rows(self, items: Iterable[Mapping[str, Any]]) -> Iterator[Row]:
        """Partition and accumulate items; rows come back with their y offsets unset"""
        entries = ((dict(item), resolve_aspect_ratio(item)) for item in partition_pinned(items))
        return accumulate_rows(
            entries,
            self.container_width,
            self.target_row_height,
            gutter=self.gutter,
            row_break=self.row_break,
        )

    def pack_items(self, items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Return placed items in row order"""
        packed: List[Dict[str, Any]] = []
        current_y = 0
        row_count = 0

        for row in self.rows(items):
            row.y = current_y
            placed, height = finalize_row(
                row,
                self.container_width,
                self.target_row_height,
                gutter=self.gutter,
                snap_last_to_edge=self.snap_last_to_edge,
                last_row_cap_multiplier=self.last_row_cap_multiplier,
            )
            packed.extend(placed)
            current_y += height + self.gutter
            row_count += 1

        logger.debug(
            f"Packed {len(packed)} items into {row_count} rows "
            f"(width={self.container_width}, target={self.target_row_height}, gutter={self.gutter})"
        )
        return packed


def pack(
    items: Iterable[Mapping[str, Any]],
    container_width: float,
    target_row_height: float,
    gutter: float = 0,
    snap_last_to_edge: bool = False,
    last_row_cap_multiplier: Optional[float] = None,
    row_break: str = ROW_BREAK_CLOSEST,
) -> List[Dict[str, Any]]:
    """Lay out ``items`` into justified rows.

    Each returned item is a copy of the input mapping with ``x``, ``y``,
    ``width``, ``height``, ``aspect_ratio`` and ``is_last_row`` set. Pinned
    items come first. An empty input returns an empty list.
    """
    packer = RowJustifiedPacker(
        container_width,
        target_row_height,
        gutter=gutter,
        snap_last_to_edge=snap_last_to_edge,
        last_row_cap_multiplier=last_row_cap_multiplier,
        row_break=row_break,
    )
    return packer.pack_items(items)


def layout_height(placed: Iterable[Mapping[str, Any]]) -> int:
    """Bottom edge of the lowest placed item (0 for no items)"""
    return max((item["y"] + item["height"] for item in placed), default=0)


def group_rows(placed: Iterable[Mapping[str, Any]]) -> List[List[Mapping[str, Any]]]:
    """Regroup a flat packed list into rows by their shared y offset"""
    rows: List[List[Mapping[str, Any]]] = []
    current_y = None
    for item in placed:
        if item["y"] != current_y:
            rows.append([])
            current_y = item["y"]
        rows[-1].append(item)
    return rows
