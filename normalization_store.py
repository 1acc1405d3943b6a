"""
normalization_store.py

Save / load built normalization parameters as JSON.

File layout:
  {
    "observation_window": 500,
    "method": "kaplan_meier_p05_p95",
    "features": {
      "<source_id>": {
        "transform_table": {"<raw_value>": <survival>, ...},   # dense P05..P95
        "range": {"min_survival": ..., "max_survival": ...},
        "diagnostics": {"p05_value": ..., "p95_value": ..., ...}
      }
    }
  }

Writes are atomic (tmp file then replace).  Loads are all-or-nothing: any
problem with any feature fails the whole load, and a file built under a
different observation window is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import math
import os
import tempfile
from typing import Any, Mapping, Sequence

from board_features import BoardFeatureSource
from errors import LoadFailure, WindowMismatchError
from feature_builder import SurvivalFeatureParams
from feature_transform import FeatureDefinition, TableTransform
from normalization import FeatureSignal, NormalizationRange, TransformTable

logger = logging.getLogger(__name__)

METHOD = "kaplan_meier_p05_p95"
REQUIRED_DIAGNOSTICS = ("p05_value", "p95_value", "p05_survival", "p95_survival", "unique_value_count")


@dataclass(frozen=True)
class StoredFeatureParams:
    source_id: str
    table: TransformTable
    range: NormalizationRange
    diagnostics: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def to_feature(self, source: BoardFeatureSource) -> FeatureDefinition:
        return FeatureDefinition(
            id=f"{source.id}_table_km",
            name=f"{source.name} (KM)",
            source_id=source.id,
            extract=source.extract,
            transform=TableTransform(table=self.table, range=self.range),
            diagnostics=dict(self.diagnostics),
        )


def params_to_payload(params: Mapping[str, SurvivalFeatureParams], observation_window: int) -> dict:
    features = {}
    for source_id, p in params.items():
        features[source_id] = {
            "transform_table": p.table.to_mapping(),
            "range": {
                "min_survival": float(p.range.min_survival),
                "max_survival": float(p.range.max_survival),
            },
            "diagnostics": p.diagnostics.to_dict(),
        }
    return {
        "observation_window": int(observation_window),
        "method": METHOD,
        "features": features,
    }


def save_normalization_params(
    path: str,
    params: Mapping[str, SurvivalFeatureParams],
    observation_window: int,
) -> None:
    payload = params_to_payload(params, observation_window)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    # unique tmp name per writer; concurrent saves to one path never share it
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=directory or ".",
        prefix=os.path.basename(path) + ".",
        suffix=".tmp",
        delete=False,
    ) as f:
        tmp_path = f.name
        try:
            json.dump(payload, f, indent=2)
        except (TypeError, ValueError):
            f.close()
            os.remove(tmp_path)
            raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    logger.info("Saved normalization parameters for %d feature(s) to %s", len(params), path)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _finite(raw: Any, where: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise LoadFailure(f"{where}: expected a number, got {raw!r}")
    value = float(raw)
    if not math.isfinite(value):
        raise LoadFailure(f"{where}: non-finite value {raw!r}")
    return value


def _parse_feature(source_id: str, raw: Any) -> StoredFeatureParams:
    where = f"feature {source_id!r}"
    if not isinstance(raw, Mapping):
        raise LoadFailure(f"{where}: expected an object")

    try:
        table = TransformTable.from_mapping(raw.get("transform_table"))
    except (TypeError, ValueError) as e:
        raise LoadFailure(f"{where}: bad transform_table: {e}") from e

    rng = raw.get("range")
    if not isinstance(rng, Mapping):
        raise LoadFailure(f"{where}: missing range")
    norm_range = NormalizationRange(
        min_survival=_finite(rng.get("min_survival"), f"{where} range.min_survival"),
        max_survival=_finite(rng.get("max_survival"), f"{where} range.max_survival"),
        signal=FeatureSignal.POSITIVE,
    )

    diagnostics = raw.get("diagnostics")
    if not isinstance(diagnostics, Mapping):
        raise LoadFailure(f"{where}: missing diagnostics")
    missing = [k for k in REQUIRED_DIAGNOSTICS if k not in diagnostics]
    if missing:
        raise LoadFailure(f"{where}: diagnostics missing {', '.join(missing)}")
    for key in ("p05_value", "p95_value", "unique_value_count"):
        value = diagnostics[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise LoadFailure(f"{where}: diagnostics.{key} must be a non-negative integer, got {value!r}")
    for key in ("p05_survival", "p95_survival"):
        _finite(diagnostics[key], f"{where} diagnostics.{key}")
    if (diagnostics["p05_value"], diagnostics["p95_value"]) != (table.min_value, table.max_value):
        raise LoadFailure(
            f"{where}: transform_table covers [{table.min_value}, {table.max_value}] but diagnostics "
            f"say [{diagnostics['p05_value']}, {diagnostics['p95_value']}]"
        )

    return StoredFeatureParams(
        source_id=source_id,
        table=table,
        range=norm_range,
        diagnostics=dict(diagnostics),
    )


def load_normalization_params(path: str, expected_window: int) -> dict[str, StoredFeatureParams]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError as e:
        raise LoadFailure(f"normalization file not found: {path}") from e
    except (OSError, ValueError) as e:
        raise LoadFailure(f"failed to read normalization file {path}: {e}") from e

    if not isinstance(payload, Mapping):
        raise LoadFailure(f"{path}: expected a JSON object")
    if payload.get("method") != METHOD:
        raise LoadFailure(f"{path}: unsupported method {payload.get('method')!r}")
    window = payload.get("observation_window")
    if isinstance(window, bool) or not isinstance(window, int):
        raise LoadFailure(f"{path}: missing or invalid observation_window")
    if window != expected_window:
        raise WindowMismatchError(expected_window, window)

    features = payload.get("features")
    if not isinstance(features, Mapping):
        raise LoadFailure(f"{path}: 'features' must be an object")
    loaded = {str(sid): _parse_feature(str(sid), raw) for sid, raw in features.items()}
    logger.info("Loaded normalization parameters for %d feature(s) from %s", len(loaded), path)
    return loaded


def load_table_km_features(
    path: str,
    sources: Sequence[BoardFeatureSource],
    expected_window: int,
) -> list[FeatureDefinition]:
    stored = load_normalization_params(path, expected_window)
    missing = [s.id for s in sources if s.id not in stored]
    if missing:
        raise LoadFailure(f"{path}: no parameters for {', '.join(missing)}")
    return [stored[s.id].to_feature(s) for s in sources]
