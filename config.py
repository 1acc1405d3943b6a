"""
config.py -- All tunable parameters for survival-based feature normalization.

Every value here is loaded from environment variables so a training run can
be reconfigured (or a .env file swapped) without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen

Only the one-shot construction phase reads these values.  Built features
carry everything they need and never look at this module again.
"""

import os

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Dataset
# ---------------------------------------------------------------------------

# Turn limit used when the session dataset was recorded.  Sessions that reach
# it without a game over are right-censored.  Stored alongside the built
# parameters and checked again at load time: survival estimates are only
# meaningful for the window they were computed under.
OBSERVATION_WINDOW: int = _env("OBSERVATION_WINDOW", 500, int)

# ---------------------------------------------------------------------------
# Kaplan-Meier estimation
# ---------------------------------------------------------------------------

# Value groups with fewer observations than this are still estimated but
# flagged low_confidence in the diagnostics.
# Raising it: more values flagged.  Lowering it: quieter diagnostics.
MIN_SAMPLES_PER_VALUE: int = _env("MIN_SAMPLES_PER_VALUE", 10, int)

# Minimum observations for a raw value to enter the transform table directly.
# Values below it are treated as gaps and filled by linear interpolation.
# 1 = every observed value is used as-is (the default).
MIN_TABLE_SAMPLES: int = _env("MIN_TABLE_SAMPLES", 1, int)

# "step"         = smallest event time where S(t) <= 0.5
# "interpolated" = linear interpolation between the two bracketing KM points
MEDIAN_METHOD: str = _env("MEDIAN_METHOD", "step")

# ---------------------------------------------------------------------------
# Percentile anchors (count-weighted)
# ---------------------------------------------------------------------------

# Lower / upper anchors of the transform table and normalization range.
# Widening them (0.01 / 0.99) lets rare extremes stretch the scale.
LOW_PERCENTILE: float = _env("LOW_PERCENTILE", 0.05, float)
HIGH_PERCENTILE: float = _env("HIGH_PERCENTILE", 0.95, float)

# Lower anchor for raw "risk" features, which only penalize the upper tail.
RISK_PERCENTILE: float = _env("RISK_PERCENTILE", 0.75, float)

# ---------------------------------------------------------------------------
# Batch construction
# ---------------------------------------------------------------------------

# Worker threads for per-feature pipelines.  Features are independent, so
# this only bounds parallelism; 1 runs everything sequentially.
BUILD_WORKERS: int = _env("BUILD_WORKERS", 4, int)

# When True, the first per-feature failure aborts the whole batch.
# When False (default), failures are collected and reported per feature.
STRICT_BUILD: bool = _env("STRICT_BUILD", False, bool)

# ---------------------------------------------------------------------------
# Files & logging
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows per-value estimates; INFO is per feature.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# Default output path for generated normalization parameters.
NORMALIZATION_PATH: str = _env("NORMALIZATION_PATH", os.path.join("data", "km_normalization.json"))

# Directory for per-feature KM curve CSV exports.  Empty = no export.
KM_OUTPUT_DIR: str = _env("KM_OUTPUT_DIR", "")


# ---------------------------------------------------------------------------
# Startup banner -- printed by the analysis command
# ---------------------------------------------------------------------------

def summary_lines() -> list[str]:
    """Summary of the active settings so you know what a run used."""
    return [
        "=" * 60,
        "  KM FEATURE NORMALIZATION",
        "=" * 60,
        f"  Observation window: {OBSERVATION_WINDOW} turns",
        f"  Percentiles:        P{LOW_PERCENTILE * 100:.0f}-P{HIGH_PERCENTILE * 100:.0f}"
        f" (risk from P{RISK_PERCENTILE * 100:.0f})",
        f"  Median method:      {MEDIAN_METHOD}",
        f"  Low confidence:     < {MIN_SAMPLES_PER_VALUE} samples",
        f"  Table threshold:    >= {MIN_TABLE_SAMPLES} samples",
        f"  Workers:            {BUILD_WORKERS}",
        f"  Strict build:       {'yes' if STRICT_BUILD else 'no'}",
        f"  Log level:          {LOG_LEVEL}",
        "=" * 60,
    ]
