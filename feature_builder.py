"""
feature_builder.py

Batch construction of survival-normalized features.

Per feature source, the pipeline is strictly sequential:

  observations -> value groups -> KM estimates -> P05/P95 bounds
               -> transform table -> normalization range

Different sources share nothing, so FeatureBuilder runs one pipeline per
worker thread and joins the results into a BuildReport.  A failing source
does not stop the others unless strict mode is on.  Cancellation is coarse:
the shared Event is checked before a source starts and between stages, and
a cancelled source's partial state is dropped.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
import threading
from typing import Any, Callable, Iterable, Mapping, Sequence, Union

import config
from board_features import BoardFeatureSource
from errors import BuildCancelled, DiagnosticFlag, MissingParamsError, NormalizationError
from feature_transform import FeatureDefinition, RawTransform, TableTransform
from normalization import (
    FeatureSignal,
    NormalizationRange,
    PercentileBounds,
    TransformTable,
    build_transform_table,
    select_percentile_bounds,
    value_percentiles,
)
from session_data import Observation, SessionCollection, aggregate_observations, observations_from_sessions
from survival_model import SurvivalEstimate, estimate_value_groups

logger = logging.getLogger(__name__)

# Count-weighted percentiles kept on every built feature (report + raw features)
PERCENTILE_POINTS = (0.0, 0.25, 0.5, 0.75, 1.0)

ObservationSource = Union[Iterable[Observation], Callable[[], Iterable[Observation]]]


@dataclass(frozen=True)
class BuilderConfig:
    min_samples_per_value: int = 10
    min_table_samples: int = 1
    median_method: str = "step"
    low_percentile: float = 0.05
    high_percentile: float = 0.95
    risk_percentile: float = 0.75
    workers: int = 4
    strict: bool = False

    @classmethod
    def from_env(cls) -> "BuilderConfig":
        return cls(
            min_samples_per_value=config.MIN_SAMPLES_PER_VALUE,
            min_table_samples=config.MIN_TABLE_SAMPLES,
            median_method=config.MEDIAN_METHOD,
            low_percentile=config.LOW_PERCENTILE,
            high_percentile=config.HIGH_PERCENTILE,
            risk_percentile=config.RISK_PERCENTILE,
            workers=config.BUILD_WORKERS,
            strict=config.STRICT_BUILD,
        )


@dataclass(frozen=True)
class FeatureDiagnostics:
    p05_value: int
    p95_value: int
    p05_survival: float
    p95_survival: float
    unique_value_count: int
    total_observations: int = 0
    censored_observations: int = 0
    low_confidence_values: tuple[int, ...] = ()
    lower_bound_values: tuple[int, ...] = ()
    interpolated_values: tuple[int, ...] = ()
    # survival at P95 above survival at P05
    larger_is_better: bool = False
    flags: tuple[DiagnosticFlag, ...] = ()

    def has_flag(self, flag: DiagnosticFlag) -> bool:
        return flag in self.flags

    def to_dict(self) -> dict[str, Any]:
        return {
            "p05_value": int(self.p05_value),
            "p95_value": int(self.p95_value),
            "p05_survival": float(self.p05_survival),
            "p95_survival": float(self.p95_survival),
            "unique_value_count": int(self.unique_value_count),
            "total_observations": int(self.total_observations),
            "censored_observations": int(self.censored_observations),
            "low_confidence_values": list(self.low_confidence_values),
            "lower_bound_values": list(self.lower_bound_values),
            "interpolated_values": list(self.interpolated_values),
            "larger_is_better": bool(self.larger_is_better),
            "flags": [f.value for f in self.flags],
        }


@dataclass(frozen=True, eq=False)
class SurvivalFeatureParams:
    """Everything the KM pipeline learned about one feature source."""

    source_id: str
    estimates: Mapping[int, SurvivalEstimate]
    bounds: PercentileBounds
    table: TransformTable
    range: NormalizationRange
    value_percentiles: Mapping[float, int]
    diagnostics: FeatureDiagnostics

    def percentile_value(self, q: float) -> int:
        if q in self.value_percentiles:
            return self.value_percentiles[q]
        counts = {v: e.sample_count for v, e in self.estimates.items()}
        return value_percentiles(counts, (q,))[0]


class _BatchStop:
    """Set by the batch itself (strict failure) or through the caller's Event."""

    def __init__(self, outer: threading.Event | None = None) -> None:
        self._outer = outer
        self._own = threading.Event()

    def set(self) -> None:
        self._own.set()

    def is_set(self) -> bool:
        return self._own.is_set() or (self._outer is not None and self._outer.is_set())


def _check_cancel(cancel_event: threading.Event | _BatchStop | None, source_id: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise BuildCancelled(source_id)


def build_feature_params(
    source_id: str,
    observations: Iterable[Observation],
    cfg: BuilderConfig,
    cancel_event: threading.Event | _BatchStop | None = None,
) -> SurvivalFeatureParams:
    _check_cancel(cancel_event, source_id)
    groups = aggregate_observations(observations, source_id)

    _check_cancel(cancel_event, source_id)
    estimates = estimate_value_groups(
        groups,
        min_samples=cfg.min_samples_per_value,
        median_method=cfg.median_method,
    )

    _check_cancel(cancel_event, source_id)
    bounds = select_percentile_bounds(estimates, cfg.low_percentile, cfg.high_percentile)
    table, interpolated = build_transform_table(estimates, bounds, cfg.min_table_samples)
    norm_range = NormalizationRange.from_table(table, FeatureSignal.POSITIVE)

    counts = {v: e.sample_count for v, e in estimates.items()}
    points = sorted(set(PERCENTILE_POINTS) | {cfg.low_percentile, cfg.risk_percentile, cfg.high_percentile})
    percentiles = dict(zip(points, value_percentiles(counts, points)))

    low_conf = tuple(v for v, e in estimates.items() if e.low_confidence)
    lower_bound = tuple(v for v, e in estimates.items() if e.median_is_lower_bound)
    flags = []
    if low_conf:
        flags.append(DiagnosticFlag.LOW_CONFIDENCE)
    if lower_bound:
        flags.append(DiagnosticFlag.CENSORED_MEDIAN_APPROXIMATION)
    if bounds.is_degenerate or norm_range.is_degenerate:
        flags.append(DiagnosticFlag.DEGENERATE_RANGE)

    diagnostics = FeatureDiagnostics(
        p05_value=bounds.p05_value,
        p95_value=bounds.p95_value,
        p05_survival=bounds.p05_survival,
        p95_survival=bounds.p95_survival,
        unique_value_count=len(estimates),
        total_observations=sum(counts.values()),
        censored_observations=sum(g.censored_count for g in groups.values()),
        low_confidence_values=low_conf,
        lower_bound_values=lower_bound,
        interpolated_values=tuple(interpolated),
        larger_is_better=bounds.p95_survival > bounds.p05_survival,
        flags=tuple(flags),
    )

    logger.info(
        "%s: %d values, %d observations, P05=%d (%.1f) P95=%d (%.1f)",
        source_id,
        diagnostics.unique_value_count,
        diagnostics.total_observations,
        bounds.p05_value,
        bounds.p05_survival,
        bounds.p95_value,
        bounds.p95_survival,
    )
    for flag in flags:
        logger.warning("%s: %s", source_id, flag.value)
    logger.debug("%s: estimates %s", source_id, [e.to_dict() for e in estimates.values()])

    return SurvivalFeatureParams(
        source_id=source_id,
        estimates=estimates,
        bounds=bounds,
        table=table,
        range=norm_range,
        value_percentiles=percentiles,
        diagnostics=diagnostics,
    )


@dataclass
class BuildReport:
    params: dict[str, SurvivalFeatureParams] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    cancelled: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def raise_for_errors(self) -> None:
        for exc in self.errors.values():
            raise exc


class FeatureBuilder:
    def __init__(self, cfg: BuilderConfig | None = None) -> None:
        self.cfg = cfg if cfg is not None else BuilderConfig.from_env()

    def _run_one(
        self,
        source_id: str,
        observations: ObservationSource,
        stop: _BatchStop,
    ) -> SurvivalFeatureParams:
        _check_cancel(stop, source_id)
        if callable(observations):
            observations = observations()
        return build_feature_params(source_id, observations, self.cfg, stop)

    def compute_params(
        self,
        observations_by_feature: Mapping[str, ObservationSource],
        cancel_event: threading.Event | None = None,
    ) -> BuildReport:
        """
        Run every source's pipeline and collect the results.

        Values may be iterables of observations or zero-argument callables
        returning one; callables run inside the worker.
        """
        order = list(observations_by_feature)
        workers = max(1, min(int(self.cfg.workers), len(order) or 1))
        logger.info("Building %d feature(s) with %d worker(s)", len(order), workers)

        report = BuildReport()
        stop = _BatchStop(cancel_event)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._run_one, sid, observations_by_feature[sid], stop): sid
                for sid in order
            }
            for future in as_completed(futures):
                sid = futures[future]
                try:
                    report.params[sid] = future.result()
                except BuildCancelled:
                    logger.info("%s: cancelled", sid)
                    report.cancelled.append(sid)
                except Exception as e:
                    if isinstance(e, NormalizationError):
                        logger.error("%s: build failed: %s", sid, e)
                    else:
                        logger.exception("%s: build failed", sid)
                    report.errors[sid] = e
                    if self.cfg.strict:
                        # running siblings stop at their next stage boundary
                        stop.set()
                        for pending in futures:
                            pending.cancel()
                        raise

        report.params = {sid: report.params[sid] for sid in order if sid in report.params}
        report.errors = {sid: report.errors[sid] for sid in order if sid in report.errors}
        report.cancelled = [sid for sid in order if sid in report.cancelled]
        return report

    # ------------------------------------------------------------------
    # Feature instances
    # ------------------------------------------------------------------

    def _params_for(self, source: BoardFeatureSource, report: BuildReport) -> SurvivalFeatureParams:
        params = report.params.get(source.id)
        if params is None:
            raise MissingParamsError(source.id)
        return params

    def build_table_km_feature(self, source: BoardFeatureSource, report: BuildReport) -> FeatureDefinition:
        params = self._params_for(source, report)
        return FeatureDefinition(
            id=f"{source.id}_table_km",
            name=f"{source.name} (KM)",
            source_id=source.id,
            extract=source.extract,
            transform=TableTransform(table=params.table, range=params.range),
            diagnostics=params.diagnostics.to_dict(),
        )

    def build_raw_penalty_feature(self, source: BoardFeatureSource, report: BuildReport) -> FeatureDefinition:
        params = self._params_for(source, report)
        return FeatureDefinition(
            id=f"{source.id}_raw_penalty",
            name=f"{source.name} Penalty",
            source_id=source.id,
            extract=source.extract,
            transform=RawTransform(
                normalize_min=float(params.percentile_value(self.cfg.low_percentile)),
                normalize_max=float(params.percentile_value(self.cfg.high_percentile)),
                signal=FeatureSignal.NEGATIVE,
            ),
            diagnostics=params.diagnostics.to_dict(),
        )

    def build_raw_risk_feature(self, source: BoardFeatureSource, report: BuildReport) -> FeatureDefinition:
        """Only the upper tail (P75-P95) counts; everything below P75 scores 1.0."""
        params = self._params_for(source, report)
        return FeatureDefinition(
            id=f"{source.id}_raw_risk",
            name=f"{source.name} Risk",
            source_id=source.id,
            extract=source.extract,
            transform=RawTransform(
                normalize_min=float(params.percentile_value(self.cfg.risk_percentile)),
                normalize_max=float(params.percentile_value(self.cfg.high_percentile)),
                signal=FeatureSignal.NEGATIVE,
            ),
            diagnostics=params.diagnostics.to_dict(),
        )

    def build_features(
        self,
        sources: Sequence[BoardFeatureSource],
        report: BuildReport,
        *,
        raw: bool = True,
        table_km: bool = True,
    ) -> list[FeatureDefinition]:
        features: list[FeatureDefinition] = []
        for source in sources:
            if raw:
                features.append(self.build_raw_penalty_feature(source, report))
                features.append(self.build_raw_risk_feature(source, report))
            if table_km:
                features.append(self.build_table_km_feature(source, report))
        return features


def build_from_sessions(
    collection: SessionCollection,
    sources: Sequence[BoardFeatureSource],
    builder: FeatureBuilder | None = None,
    cancel_event: threading.Event | None = None,
) -> BuildReport:
    builder = builder if builder is not None else FeatureBuilder()
    jobs: dict[str, ObservationSource] = {
        source.id: (lambda s=source: observations_from_sessions(collection.sessions, s.extract))
        for source in sources
    }
    return builder.compute_params(jobs, cancel_event)
