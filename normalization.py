"""
normalization.py

Percentile selection, transform tables and [0, 1] normalization.

Pipeline for one feature (after Kaplan-Meier):
  1. value_percentiles / select_percentile_bounds
       count-weighted P05 / P95 over raw values, so common values anchor
       the scale instead of rare extremes
  2. build_transform_table
       dense raw_value -> survival-time table over [P05, P95], gaps filled
       by linear interpolation
  3. NormalizationRange.normalize
       linear scaling of survival time into [0, 1] with polarity applied

Everything built here is immutable; lookups and normalization never allocate
or branch on anything but the input value.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import Any, Mapping, Sequence

import numpy as np

from survival_model import SurvivalEstimate

NEUTRAL_SCORE = 0.5


def _clamp(value: float, lo: float, hi: float) -> float:
    low = min(lo, hi)
    high = max(lo, hi)
    return max(low, min(float(value), high))


def _safe_float(raw: Any) -> float:
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"non-finite value {raw!r}")
    return value


class FeatureSignal(str, Enum):
    """Which end of the scale is good.  POSITIVE: higher is better."""

    POSITIVE = "positive"
    NEGATIVE = "negative"

    def apply(self, norm: float) -> float:
        if self is FeatureSignal.POSITIVE:
            return norm
        return 1.0 - norm


# ---------------------------------------------------------------------------
# Percentile selection
# ---------------------------------------------------------------------------

def value_percentiles(counts: Mapping[int, int], quantiles: Sequence[float]) -> list[int]:
    """
    Count-weighted percentiles over raw values.

    Walks values in ascending order accumulating counts; each quantile maps
    to the first value whose cumulative fraction reaches or exceeds it.
    """
    rows = sorted((int(v), int(c)) for v, c in counts.items() if int(c) > 0)
    if not rows:
        raise ValueError("value_percentiles needs at least one counted value")
    total = sum(c for _, c in rows)

    out: list[int] = []
    for q in quantiles:
        pct = _clamp(float(q), 0.0, 1.0)
        chosen = rows[-1][0]
        running = 0
        for value, count in rows:
            running += count
            if running / total >= pct:
                chosen = value
                break
        out.append(chosen)
    return out


@dataclass(frozen=True)
class PercentileBounds:
    p05_value: int
    p95_value: int
    p05_survival: float
    p95_survival: float

    @property
    def is_degenerate(self) -> bool:
        return self.p05_value == self.p95_value

    @property
    def width(self) -> int:
        return self.p95_value - self.p05_value + 1


def select_percentile_bounds(
    estimates: Mapping[int, SurvivalEstimate],
    low: float = 0.05,
    high: float = 0.95,
) -> PercentileBounds:
    if not estimates:
        raise ValueError("select_percentile_bounds needs at least one estimate")
    if low > high:
        raise ValueError(f"low percentile {low} is above high percentile {high}")
    counts = {value: est.sample_count for value, est in estimates.items()}
    lo_value, hi_value = value_percentiles(counts, (low, high))
    return PercentileBounds(
        p05_value=lo_value,
        p95_value=hi_value,
        p05_survival=float(estimates[lo_value].median_survival_time),
        p95_survival=float(estimates[hi_value].median_survival_time),
    )


# ---------------------------------------------------------------------------
# Transform table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransformTable:
    """Dense survival-time table indexed by raw_value - min_value."""

    min_value: int
    values: tuple[float, ...]

    def __post_init__(self) -> None:
        if not self.values:
            raise ValueError("transform table must have at least one slot")

    @property
    def max_value(self) -> int:
        return self.min_value + len(self.values) - 1

    def __len__(self) -> int:
        return len(self.values)

    def lookup(self, raw_value: int) -> float:
        idx = raw_value - self.min_value
        if idx <= 0:
            return self.values[0]
        if idx >= len(self.values):
            return self.values[-1]
        return self.values[idx]

    def to_mapping(self) -> dict[str, float]:
        return {str(self.min_value + i): v for i, v in enumerate(self.values)}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "TransformTable":
        if not isinstance(mapping, Mapping) or not mapping:
            raise ValueError("transform table must be a non-empty mapping")
        rows: dict[int, float] = {}
        for key, raw in mapping.items():
            try:
                value = int(str(key))
            except ValueError as e:
                raise ValueError(f"transform table key {key!r} is not an integer") from e
            if value < 0:
                raise ValueError(f"transform table key {key!r} is negative")
            if value in rows:
                raise ValueError(f"transform table key {key!r} appears twice")
            rows[value] = _safe_float(raw)
        keys = sorted(rows)
        if keys[-1] - keys[0] + 1 != len(keys):
            raise ValueError(f"transform table is not contiguous over [{keys[0]}, {keys[-1]}]")
        return cls(min_value=keys[0], values=tuple(rows[k] for k in keys))


def build_transform_table(
    estimates: Mapping[int, SurvivalEstimate],
    bounds: PercentileBounds,
    min_samples: int = 1,
) -> tuple[TransformTable, list[int]]:
    """
    Dense table over [p05_value, p95_value].

    Values with fewer than *min_samples* observations (or none at all) are
    gaps, filled by linear interpolation between the nearest known values and
    carried forward/backward past the last known value on either side.  When
    no in-range value clears the threshold, every in-range estimate is used.

    Returns the table and the raw values that were filled in.
    """
    lo, hi = bounds.p05_value, bounds.p95_value
    in_range = {v: e for v, e in estimates.items() if lo <= v <= hi}
    if not in_range:
        raise ValueError(f"no estimates inside [{lo}, {hi}]")
    known = {v: e for v, e in in_range.items() if e.sample_count >= min_samples}
    if not known:
        known = in_range

    xs = sorted(known)
    ys = [float(known[v].median_survival_time) for v in xs]
    grid = np.arange(lo, hi + 1)
    # np.interp holds the end values constant outside [xs[0], xs[-1]]
    filled_values = np.interp(grid, xs, ys)

    table = TransformTable(min_value=lo, values=tuple(float(x) for x in filled_values))
    interpolated = [int(v) for v in grid.tolist() if v not in known]
    return table, interpolated


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

def linear_normalize(
    value: float,
    lo: float,
    hi: float,
    signal: FeatureSignal = FeatureSignal.POSITIVE,
) -> float:
    """Scale *value* from [lo, hi] into [0, 1]; a collapsed range is NEUTRAL_SCORE."""
    low = min(lo, hi)
    high = max(lo, hi)
    if high == low:
        return NEUTRAL_SCORE
    norm = _clamp((value - low) / (high - low), 0.0, 1.0)
    return signal.apply(norm)


@dataclass(frozen=True)
class NormalizationRange:
    min_survival: float
    max_survival: float
    signal: FeatureSignal = FeatureSignal.POSITIVE

    def __post_init__(self) -> None:
        if self.min_survival > self.max_survival:
            lo, hi = self.max_survival, self.min_survival
            object.__setattr__(self, "min_survival", lo)
            object.__setattr__(self, "max_survival", hi)

    @classmethod
    def from_table(
        cls,
        table: TransformTable,
        signal: FeatureSignal = FeatureSignal.POSITIVE,
    ) -> "NormalizationRange":
        return cls(
            min_survival=table.values[0],
            max_survival=table.values[-1],
            signal=signal,
        )

    @property
    def is_degenerate(self) -> bool:
        return self.min_survival == self.max_survival

    def normalize(self, value: float) -> float:
        return linear_normalize(value, self.min_survival, self.max_survival, self.signal)
