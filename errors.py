"""
errors.py -- Exceptions and diagnostic flags for normalization construction.

Hard failures are exceptions.  Conditions that still produce a usable
feature (thin value groups, all-censored medians, collapsed percentile
range) are reported as DiagnosticFlag values on the built feature instead.
"""

from __future__ import annotations

from enum import Enum


class NormalizationError(Exception):
    """Base class for every error raised while building or loading features."""


class ValidationError(NormalizationError, ValueError):
    """Malformed input record.  The message names the offending record."""


class WindowMismatchError(ValidationError):
    def __init__(self, expected: int, found: object) -> None:
        self.expected = expected
        self.found = found
        super().__init__(
            f"observation window mismatch: expected {expected}, stored parameters use {found!r}"
        )


class NoDataError(NormalizationError):
    def __init__(self, feature_id: str) -> None:
        self.feature_id = feature_id
        super().__init__(f"no observations for feature {feature_id!r}")


class LoadFailure(NormalizationError):
    """Persisted parameters are missing, unreadable or structurally invalid."""


class MissingParamsError(NormalizationError, KeyError):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(source_id)

    def __str__(self) -> str:
        return f"missing normalization parameters for feature source {self.source_id!r}"


class BuildCancelled(NormalizationError):
    def __init__(self, feature_id: str) -> None:
        self.feature_id = feature_id
        super().__init__(f"build cancelled for feature {feature_id!r}")


class DiagnosticFlag(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    CENSORED_MEDIAN_APPROXIMATION = "censored_median_approximation"
    DEGENERATE_RANGE = "degenerate_range"
