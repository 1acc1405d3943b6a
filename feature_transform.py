"""
feature_transform.py

Built feature instances: raw extractor + transform + normalizer.

Two transform strategies share one contract (transform(raw) -> float,
normalize(value) -> [0, 1]):
  RawTransform    identity, linear scaling between two raw percentiles
  TableTransform  Kaplan-Meier survival-time lookup, scaled between the
                  survival times at the table boundaries

FeatureDefinition composes one of them with an extractor.  Instances are
frozen and evaluation does no I/O, so a single instance can be shared by any
number of concurrent evaluators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union

from normalization import FeatureSignal, NormalizationRange, TransformTable, linear_normalize


@dataclass(frozen=True)
class RawTransform:
    normalize_min: float
    normalize_max: float
    signal: FeatureSignal = FeatureSignal.NEGATIVE

    kind = "raw"

    def transform(self, raw_value: int) -> float:
        return float(raw_value)

    def normalize(self, value: float) -> float:
        return linear_normalize(value, self.normalize_min, self.normalize_max, self.signal)


@dataclass(frozen=True)
class TableTransform:
    table: TransformTable
    range: NormalizationRange

    kind = "table_km"

    @property
    def signal(self) -> FeatureSignal:
        return self.range.signal

    def transform(self, raw_value: int) -> float:
        return self.table.lookup(raw_value)

    def normalize(self, value: float) -> float:
        return self.range.normalize(value)


Transform = Union[RawTransform, TableTransform]


@dataclass(frozen=True)
class FeatureValue:
    raw: int
    transformed: float
    normalized: float


@dataclass(frozen=True)
class FeatureDefinition:
    id: str
    name: str
    source_id: str
    extract: Callable[[Any], int]
    transform: Transform
    diagnostics: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def signal(self) -> FeatureSignal:
        return self.transform.signal

    def evaluate_raw(self, raw_value: int) -> float:
        t = self.transform
        return t.normalize(t.transform(raw_value))

    def evaluate(self, state: Any) -> float:
        return self.evaluate_raw(self.extract(state))

    def compute(self, state: Any) -> FeatureValue:
        """Raw, transformed and normalized values side by side."""
        raw = self.extract(state)
        transformed = self.transform.transform(raw)
        return FeatureValue(
            raw=raw,
            transformed=transformed,
            normalized=self.transform.normalize(transformed),
        )
