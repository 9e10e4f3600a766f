"""Aggregation states for building filters inside a query engine.

The host's aggregation driver calls input once per row, combine once per
merge of partial results (possibly produced in parallel), and output once
per group. Each state is owned by one execution context at a time.

A state cell is either Empty or Materialized. The filter is built lazily
on the first input or combine, so groups that never see a value cost
nothing until output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

import pyarrow as pa

from tiered_bloom.config import FilterConfig
from tiered_bloom.tiered_filter import TieredFilter
from tiered_bloom.wire_codec import WireCodec
from tiered_bloom_sql.transport import Transport

logger = logging.getLogger(__name__)

# ObjectBigArray-style per-slot overhead of a grouped state
GROUP_SLOT_BYTES = 8


@dataclass(frozen=True)
class Empty:
    """No filter yet."""


@dataclass(frozen=True, eq=False)
class Materialized:
    """A cell holding its filter."""
    filter: TieredFilter


FilterCell = Union[Empty, Materialized]
EMPTY = Empty()


class _AggregationState:
    """Shared lifecycle of single and grouped states.

    Attributes:
        config (FilterConfig): Defaults for lazily created filters.
        memory_usage (int): Bytes accounted for materialized filters; only grows.
    """

    def __init__(self, config: FilterConfig | None = None):
        self.config = config or FilterConfig()
        self.memory_usage = 0

    @property
    def cell(self) -> FilterCell:
        raise NotImplementedError

    def _set_cell(self, cell: FilterCell):
        raise NotImplementedError

    @property
    def filter(self) -> TieredFilter | None:
        cell = self.cell
        if isinstance(cell, Materialized):
            return cell.filter
        return None

    def materialize(self, expected_insertions: int | None = None,
                    false_positive_rate: float | None = None) -> TieredFilter:
        """Return the cell's filter, creating it on first use."""
        cell = self.cell
        if isinstance(cell, Materialized):
            return cell.filter
        cfg = self.config
        bf = TieredFilter(
            expected_insertions if expected_insertions is not None else cfg.expected_insertions,
            false_positive_rate if false_positive_rate is not None else cfg.false_positive_rate,
            prefilter=cfg.prefilter_enabled,
            hash_family=cfg.hash_family,
        )
        return self.adopt(bf)

    def adopt(self, bf: TieredFilter) -> TieredFilter:
        """Make bf the cell's filter and account for its memory."""
        self._set_cell(Materialized(bf))
        self.memory_usage += bf.estimated_size_bytes()
        return bf

    def codec(self) -> WireCodec:
        return WireCodec(self.config.compression_level)


class SingleAggregationState(_AggregationState):
    """State for an ungrouped aggregation: one cell."""

    def __init__(self, config: FilterConfig | None = None):
        super().__init__(config)
        self._cell: FilterCell = EMPTY

    @property
    def cell(self) -> FilterCell:
        return self._cell

    def _set_cell(self, cell: FilterCell):
        self._cell = cell

    @property
    def estimated_size(self) -> int:
        return self.memory_usage


class GroupedAggregationState(_AggregationState):
    """State for a GROUP BY aggregation: one cell per dense group id.

    The driver grows the state with ensure_capacity as it discovers groups
    and selects the current group with set_group_id before each call.
    """

    def __init__(self, config: FilterConfig | None = None):
        super().__init__(config)
        self._cells: list[FilterCell] = []
        self.group_id = 0

    def ensure_capacity(self, size: int):
        if size > len(self._cells):
            self._cells.extend([EMPTY] * (size - len(self._cells)))

    def set_group_id(self, group_id: int):
        if group_id < 0:
            raise IndexError(f"group_id must be non-negative, got {group_id}")
        self.group_id = group_id

    @property
    def group_count(self) -> int:
        return len(self._cells)

    def cell_at(self, group_id: int) -> FilterCell:
        return self._cells[group_id]

    @property
    def cell(self) -> FilterCell:
        if self.group_id >= len(self._cells):
            raise IndexError(f"group_id {self.group_id} beyond capacity {len(self._cells)}")
        return self._cells[self.group_id]

    def _set_cell(self, cell: FilterCell):
        if self.group_id >= len(self._cells):
            raise IndexError(f"group_id {self.group_id} beyond capacity {len(self._cells)}")
        self._cells[self.group_id] = cell

    @property
    def estimated_size(self) -> int:
        return self.memory_usage + GROUP_SLOT_BYTES * len(self._cells)


AggregationState = Union[SingleAggregationState, GroupedAggregationState]


def aggregate_input(state: AggregationState, value: bytes | None,
                    expected_insertions: int | None = None,
                    false_positive_rate: float | None = None):
    """Add one row's value. Parameters only apply when the filter is created."""
    bf = state.materialize(expected_insertions, false_positive_rate)
    bf.put(value)


def aggregate_combine(state: AggregationState, other: AggregationState):
    """Merge other into state; other is left unchanged.

    An Empty side takes the other side's parameters. Two materialized
    sides must agree on (n, p).

    Raises:
        IncompatibleFilter: If both sides hold filters of different shape
    """
    other_bf = other.filter
    if other_bf is None:
        state.materialize()
        return
    bf = state.filter
    if bf is None:
        state.adopt(other_bf.copy())
        return
    bf.union(other_bf)


def aggregate_output(state: AggregationState, codec: WireCodec | None = None) -> bytes:
    """Encode the state's filter; an Empty state yields an empty default filter."""
    bf = state.materialize()
    return (codec or state.codec()).encode(bf)


def serialize_state(state: AggregationState, codec: WireCodec | None = None) -> bytes | None:
    """Intermediate form for shipping partial results; None when Empty."""
    bf = state.filter
    if bf is None:
        return None
    return (codec or state.codec()).encode(bf)


def deserialize_state(data: bytes | None, state: AggregationState, codec: WireCodec | None = None):
    """Merge a serialized partial result into state. None leaves it untouched."""
    if data is None:
        return
    bf = (codec or state.codec()).decode(data)
    current = state.filter
    if current is None:
        state.adopt(bf)
    else:
        current.union(bf)


def load_input(state: AggregationState, url: str, transport: Transport,
               codec: WireCodec | None = None):
    """Union a persisted, base64-wrapped filter fetched from url into state.

    Transport and decode errors propagate so the client sees them.
    """
    data = transport.fetch(url)
    bf = (codec or state.codec()).decode(data, text=True)
    logger.info(f"Loaded {bf!r} from {url}")
    current = state.filter
    if current is None:
        state.adopt(bf)
    else:
        current.union(bf)


def _as_bytes_list(values: pa.Array | pa.ChunkedArray) -> list[bytes | None]:
    if pa.types.is_string(values.type) or pa.types.is_large_string(values.type):
        return [v.encode("utf-8") if v is not None else None for v in values.to_pylist()]
    if pa.types.is_binary(values.type) or pa.types.is_large_binary(values.type):
        return values.to_pylist()
    raise TypeError(f"Expected a string or binary column, got {values.type}")


def aggregate_batch(state: AggregationState, values: pa.Array | pa.ChunkedArray,
                    group_ids: pa.Array | pa.ChunkedArray | None = None,
                    expected_insertions: int | None = None,
                    false_positive_rate: float | None = None):
    """Feed a column of values, row by row, as the host driver would.

    Null values are skipped. A grouped state needs a parallel column of
    group ids and grows to fit the largest one.
    """
    rows = _as_bytes_list(values)
    if isinstance(state, GroupedAggregationState):
        if group_ids is None:
            raise ValueError("Grouped aggregation needs group_ids")
        groups = group_ids.to_pylist()
        if len(groups) != len(rows):
            raise ValueError(f"{len(groups)} group ids for {len(rows)} values")
        if groups:
            state.ensure_capacity(max(groups) + 1)
        for group_id, value in zip(groups, rows):
            if value is None:
                continue
            state.set_group_id(group_id)
            aggregate_input(state, value, expected_insertions, false_positive_rate)
        return
    for value in rows:
        if value is not None:
            aggregate_input(state, value, expected_insertions, false_positive_rate)


def output_array(state: GroupedAggregationState, codec: WireCodec | None = None) -> pa.BinaryArray:
    """One encoded filter per group, in group id order."""
    codec = codec or state.codec()
    out = []
    for group_id in range(state.group_count):
        state.set_group_id(group_id)
        out.append(aggregate_output(state, codec))
    return pa.array(out, type=pa.binary())
