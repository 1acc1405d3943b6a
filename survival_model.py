"""
survival_model.py

Kaplan-Meier survival estimation for right-censored board observations.
Implements:
  - KaplanMeierCurve: product-limit estimate with tie handling
  - SurvivalEstimate: median remaining turns for one raw feature value
  - SurvivalStats: naive-vs-KM summary used by the censoring report

Naive means are biased on censored data: good board states are the ones most
likely to reach the turn limit, so their true survival is understated.  The
product-limit estimator only lets an observation vote while it is still
observed, which removes that bias for the median.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterable, Mapping, Sequence

import numpy as np

from session_data import ValueGroup

MEDIAN_METHODS = ("step", "interpolated")


def _clamp(value: float, lo: float, hi: float) -> float:
    low = min(float(lo), float(hi))
    high = max(float(lo), float(hi))
    return max(low, min(float(value), high))


def _normalize_median_method(raw: str) -> str:
    method = str(raw or "").strip().lower()
    if method not in MEDIAN_METHODS:
        raise ValueError(f"unknown median method {raw!r}; expected one of {MEDIAN_METHODS}")
    return method


@dataclass(frozen=True, eq=False)
class KaplanMeierCurve:
    """
    Step function S(t), stored at event times only.

    S(t) = 1 before the first event.  At each distinct time t with d deaths
    among n at risk, S is multiplied by (1 - d/n).  Censorings at t do not
    move S, but they leave the risk set after the deaths at t are counted.
    """

    times: np.ndarray
    survival: np.ndarray
    at_risk: np.ndarray
    events: np.ndarray
    n_observations: int
    n_censored: int

    @classmethod
    def from_data(cls, times: Iterable[float], censored: Iterable[bool]) -> "KaplanMeierCurve":
        t = np.asarray(list(times) if not isinstance(times, np.ndarray) else times, dtype=float).ravel()
        c = np.asarray(list(censored) if not isinstance(censored, np.ndarray) else censored, dtype=bool).ravel()
        if t.shape != c.shape:
            raise ValueError(f"times and censored flags differ in length ({t.size} != {c.size})")
        if t.size == 0:
            empty = np.asarray([], dtype=float)
            return cls(
                times=empty,
                survival=empty,
                at_risk=np.asarray([], dtype=int),
                events=np.asarray([], dtype=int),
                n_observations=0,
                n_censored=0,
            )

        distinct, inverse = np.unique(t, return_inverse=True)
        inverse = inverse.ravel()
        deaths = np.bincount(inverse, weights=(~c).astype(float), minlength=distinct.size)
        seen = np.bincount(inverse, minlength=distinct.size)
        # everyone whose time is >= t is still at risk at t
        at_risk = t.size - (np.cumsum(seen) - seen)
        survival = np.cumprod(1.0 - deaths / at_risk)

        has_event = deaths > 0
        return cls(
            times=distinct[has_event],
            survival=np.clip(survival[has_event], 0.0, 1.0),
            at_risk=at_risk[has_event].astype(int),
            events=deaths[has_event].astype(int),
            n_observations=int(t.size),
            n_censored=int(np.sum(c)),
        )

    @property
    def n_events(self) -> int:
        return int(np.sum(self.events))

    def survival_at(self, t: float) -> float:
        tt = max(0.0, float(t))
        if self.times.size == 0:
            return 1.0
        idx = np.searchsorted(self.times, tt, side="right") - 1
        if idx < 0:
            return 1.0
        return _clamp(float(self.survival[idx]), 0.0, 1.0)

    def median_survival(self, method: str = "step") -> float | None:
        """Earliest time with S(t) <= 0.5, or None if the curve never gets there."""
        method = _normalize_median_method(method)
        crossed = np.flatnonzero(self.survival <= 0.5)
        if crossed.size == 0:
            return None
        i = int(crossed[0])
        if method == "interpolated" and i > 0:
            t0, t1 = float(self.times[i - 1]), float(self.times[i])
            s0, s1 = float(self.survival[i - 1]), float(self.survival[i])
            return t0 + (0.5 - s0) / (s1 - s0) * (t1 - t0)
        return float(self.times[i])

    def rows(self) -> list[tuple[float, float, int, int]]:
        """(time, survival_prob, at_risk, events) per curve point."""
        return list(
            zip(
                self.times.tolist(),
                self.survival.tolist(),
                self.at_risk.tolist(),
                self.events.tolist(),
            )
        )


@dataclass(frozen=True)
class SurvivalEstimate:
    raw_value: int
    median_survival_time: float
    sample_count: int
    censored_count: int = 0
    # median undefined; value is the largest observed time (a lower bound)
    median_is_lower_bound: bool = False
    low_confidence: bool = False

    def to_dict(self) -> dict:
        return {
            "raw_value": int(self.raw_value),
            "median_survival_time": round(float(self.median_survival_time), 6),
            "sample_count": int(self.sample_count),
            "censored_count": int(self.censored_count),
            "median_is_lower_bound": bool(self.median_is_lower_bound),
            "low_confidence": bool(self.low_confidence),
        }


def estimate_survival(
    group: ValueGroup,
    *,
    min_samples: int = 1,
    median_method: str = "step",
) -> SurvivalEstimate:
    curve = KaplanMeierCurve.from_data(group.times, group.censored)
    median = curve.median_survival(median_method)
    lower_bound = median is None
    if lower_bound:
        median = float(group.max_time)
    return SurvivalEstimate(
        raw_value=group.raw_value,
        median_survival_time=float(median),
        sample_count=group.count,
        censored_count=group.censored_count,
        median_is_lower_bound=lower_bound,
        low_confidence=group.count < max(1, int(min_samples)),
    )


def estimate_value_groups(
    groups: Mapping[int, ValueGroup],
    *,
    min_samples: int = 1,
    median_method: str = "step",
) -> dict[int, SurvivalEstimate]:
    return {
        value: estimate_survival(groups[value], min_samples=min_samples, median_method=median_method)
        for value in sorted(groups)
    }


@dataclass(frozen=True, eq=False)
class SurvivalStats:
    """Naive and Kaplan-Meier summaries for one group of observations."""

    count: int
    censored_count: int
    mean_complete: float
    mean_all: float
    median_km: float | None
    km_curve: KaplanMeierCurve

    @classmethod
    def from_data(cls, data: Sequence[tuple[float, bool]], median_method: str = "step") -> "SurvivalStats":
        times = np.asarray([float(t) for t, _ in data], dtype=float)
        censored = np.asarray([bool(c) for _, c in data], dtype=bool)
        complete = times[~censored]
        curve = KaplanMeierCurve.from_data(times, censored)
        return cls(
            count=int(times.size),
            censored_count=int(np.sum(censored)),
            mean_complete=float(complete.mean()) if complete.size else 0.0,
            mean_all=float(times.mean()) if times.size else 0.0,
            median_km=curve.median_survival(median_method),
            km_curve=curve,
        )

    @property
    def complete_count(self) -> int:
        return self.count - self.censored_count

    def censoring_rate(self) -> float:
        if self.count == 0:
            return 0.0
        return 100.0 * self.censored_count / self.count

    def all_comp_ratio(self) -> float | None:
        """Mean(All) / Mean(Comp); how far censoring inflates the naive mean."""
        if self.complete_count == 0 or self.mean_complete == 0.0:
            return None
        return self.mean_all / self.mean_complete

    def km_vs_all_pct(self) -> float | None:
        if self.median_km is None or self.mean_all == 0.0 or not math.isfinite(self.mean_all):
            return None
        return (self.median_km - self.mean_all) / self.mean_all * 100.0
