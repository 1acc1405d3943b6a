#!/usr/bin/env python3
"""
Censoring analysis and KM normalization for recorded board sessions.

Usage:
  python3 analyze_censoring.py data/boards.json
  python3 analyze_censoring.py data/boards.json --features num_holes,max_height
  python3 analyze_censoring.py data/boards.json --km-output-dir out/km \
      --normalization-output data/km_normalization.json

Report sections:
  - overall censoring (complete vs censored sessions)
  - censoring by capture phase (quarters of the observation window)
  - censoring by placement evaluator
  - per feature: naive means vs Kaplan-Meier median at P0/P25/P50/P75/P100
"""

from __future__ import annotations

import argparse
import csv
import logging
import os
from dataclasses import replace
from typing import Hashable, Mapping, Sequence

import config
from board_features import BoardFeatureSource, SURVIVAL_FEATURE_SOURCES, get_source
from errors import NormalizationError
from feature_builder import BuilderConfig, FeatureBuilder, build_from_sessions
from normalization import value_percentiles
from normalization_store import save_normalization_params
from session_data import (
    SessionCollection,
    SessionRecord,
    capture_phase,
    capture_phase_range,
    collect_by_group,
    load_session_collection,
)
from survival_model import SurvivalStats

logger = logging.getLogger(__name__)

REPORT_PERCENTILES = (0.0, 0.25, 0.5, 0.75, 1.0)
BIAS_WARN_RATIO = 1.5


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


# ---------------------------------------------------------------------------
# Table formatting
# ---------------------------------------------------------------------------

def print_legend() -> None:
    print("Legend:")
    print("  Mean(Comp)  : Mean survival of complete games only (censored data excluded)")
    print("  Mean(All)   : Naive mean of all data (complete + censored, biased estimate)")
    print(f"  All/Comp    : Optimistic bias ratio (! when > {BIAS_WARN_RATIO})")
    print("  Median(KM)  : Kaplan-Meier median survival (handles censoring)")
    print("  KM vs All   : Difference between KM median and naive mean (% change)")


def _all_comp_str(stats: SurvivalStats) -> str:
    ratio = stats.all_comp_ratio()
    if ratio is None:
        return "N/A"
    if ratio > BIAS_WARN_RATIO:
        return f"!{ratio:.2f}x"
    return f"{ratio:.2f}x"


def _km_vs_all_str(stats: SurvivalStats) -> str:
    pct = stats.km_vs_all_pct()
    if pct is None:
        return "N/A"
    return f"{pct:+.1f}%"


def format_survival_row(label: str, stats: SurvivalStats, include_km: bool) -> str:
    row = (
        f"{label:<21} {stats.count:>8} {stats.censoring_rate():>9.1f}% "
        f"{stats.mean_complete:>12.1f} {stats.mean_all:>12.1f} {_all_comp_str(stats):>10}"
    )
    if include_km:
        median = "N/A" if stats.median_km is None else f"{stats.median_km:.1f}"
        row += f" {median:>12} {_km_vs_all_str(stats):>12}"
    return row


def print_survival_table(label_col: str, rows: Sequence[tuple[str, SurvivalStats]], include_km: bool) -> None:
    header = (
        f"{label_col:<21} {'Boards':>8} {'Censored%':>10} {'Mean(Comp)':>12} "
        f"{'Mean(All)':>12} {'All/Comp':>10}"
    )
    if include_km:
        header += f" {'Median(KM)':>12} {'KM vs All':>12}"
    print(f"  {header}")
    print(f"  {'-' * len(header)}")
    for label, stats in rows:
        print(f"  {format_survival_row(label, stats, include_km)}")


# ---------------------------------------------------------------------------
# Report sections
# ---------------------------------------------------------------------------

def survival_stats_by(
    sessions: Sequence[SessionRecord],
    key,
    median_method: str = "step",
) -> dict[Hashable, SurvivalStats]:
    grouped = collect_by_group(sessions, key)
    return {k: SurvivalStats.from_data(data, median_method) for k, data in grouped.items()}


def analyze_overall_censoring(collection: SessionCollection) -> None:
    total = len(collection.sessions)
    censored = sum(1 for s in collection.sessions if s.censored)
    complete = total - censored
    print("Overall Statistics:")
    if total == 0:
        print("  Sessions: 0")
        return
    print(
        f"  Sessions: {total} total, {complete} complete ({100.0 * complete / total:.1f}%), "
        f"{censored} censored ({100.0 * censored / total:.1f}%)"
    )
    print(f"  Total boards captured: {collection.total_boards}")


def analyze_by_capture_phase(collection: SessionCollection) -> None:
    max_turns = collection.max_turns
    stats = survival_stats_by(collection.sessions, lambda _s, b: capture_phase(b.turn, max_turns))
    rows = []
    for phase in sorted(stats, key=lambda p: capture_phase_range(p, max_turns)):
        lo, hi = capture_phase_range(phase, max_turns)
        rows.append((f"{phase:<10} {lo:>4}-{hi:<4}", stats[phase]))
    print("Censoring by Capture Phase")
    print_survival_table(f"{'Phase':<10} Range", rows, include_km=False)


def analyze_by_evaluator(collection: SessionCollection) -> None:
    stats = survival_stats_by(collection.sessions, lambda s, _b: s.placement_evaluator)
    print("Censoring by Evaluator")
    print_survival_table("Evaluator", [(name, stats[name]) for name in sorted(stats)], include_km=True)


def feature_survival_stats(
    collection: SessionCollection,
    source: BoardFeatureSource,
    median_method: str = "step",
) -> dict[int, SurvivalStats]:
    stats = survival_stats_by(collection.sessions, lambda _s, b: source.extract(b.board), median_method)
    return {value: stats[value] for value in sorted(stats)}


def percentile_rows(stats_by_value: Mapping[int, SurvivalStats]) -> list[tuple[int, SurvivalStats]]:
    """Representative values at P0/P25/P50/P75/P100 by board count."""
    if not stats_by_value:
        return []
    counts = {v: s.count for v, s in stats_by_value.items()}
    picked = sorted(set(value_percentiles(counts, REPORT_PERCENTILES)))
    return [(v, stats_by_value[v]) for v in picked]


def display_feature_statistics(source: BoardFeatureSource, stats_by_value: Mapping[int, SurvivalStats]) -> None:
    print(f"{source.name} ({source.id})")
    rows = [(str(v), s) for v, s in percentile_rows(stats_by_value)]
    print_survival_table("Value", rows, include_km=True)
    print(f"  (Showing P0, P25, P50, P75, P100 by board count, total values: {len(stats_by_value)})")


def save_feature_km_curves(
    directory: str,
    feature_id: str,
    stats_by_value: Mapping[int, SurvivalStats],
) -> str:
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{feature_id}_km.csv")
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["value", "time", "survival_prob", "at_risk", "events"])
        for value in sorted(stats_by_value):
            for time, prob, at_risk, events in stats_by_value[value].km_curve.rows():
                writer.writerow([value, time, prob, at_risk, events])
    print(f"  KM curves saved to: {path}")
    return path


def generate_normalization(
    collection: SessionCollection,
    sources: Sequence[BoardFeatureSource],
    output_path: str,
    builder: FeatureBuilder,
) -> int:
    """Build and save KM normalization parameters.  Returns the number of failed sources."""
    print("=" * 40)
    print("Generating Normalization Parameters")
    print("=" * 40)
    print(f"Features: {', '.join(s.id for s in sources)}")

    report = build_from_sessions(collection, sources, builder)
    for source_id, err in report.errors.items():
        print(f"  FAILED {source_id}: {err}")
    if not report.params:
        raise SystemExit("No normalization parameters could be built")

    for source_id, params in report.params.items():
        d = params.diagnostics
        flags = ", ".join(f.value for f in d.flags) or "-"
        print(
            f"  {source_id:<26} P05={d.p05_value:<4} ({d.p05_survival:7.1f})  "
            f"P95={d.p95_value:<4} ({d.p95_survival:7.1f})  flags: {flags}"
        )

    save_normalization_params(output_path, report.params, collection.max_turns)
    print(f"\nNormalization parameters saved to: {output_path}")
    return len(report.errors)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Censoring analysis and KM-based feature normalization")
    p.add_argument("boards", help="Path to the recorded boards JSON file")
    p.add_argument(
        "--features",
        default=",".join(s.id for s in SURVIVAL_FEATURE_SOURCES),
        help="Comma-separated feature source ids to analyze",
    )
    p.add_argument("--km-output-dir", default=config.KM_OUTPUT_DIR or None,
                   help="Directory for per-feature KM curve CSV files")
    p.add_argument("--normalization-output", default=None,
                   help="Build P05-P95 KM normalization parameters and save them here")
    p.add_argument("--workers", type=int, default=config.BUILD_WORKERS,
                   help="Worker threads for normalization construction")
    p.add_argument("--strict", action="store_true", default=config.STRICT_BUILD,
                   help="Abort on the first feature that fails to build")
    return p.parse_args(argv)


def resolve_sources(feature_ids: str) -> list[BoardFeatureSource]:
    sources = []
    for raw in feature_ids.split(","):
        fid = raw.strip()
        if not fid:
            continue
        try:
            sources.append(get_source(fid))
        except KeyError:
            raise SystemExit(f"Feature {fid} not found") from None
    if not sources:
        raise SystemExit("No features selected")
    return sources


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()

    sources = resolve_sources(args.features)
    cfg = replace(
        BuilderConfig.from_env(),
        workers=max(1, int(args.workers)),
        strict=bool(args.strict),
    )
    for line in config.summary_lines():
        logger.info(line)

    try:
        collection = load_session_collection(args.boards)
        return run_report(collection, sources, cfg, args.km_output_dir, args.normalization_output)
    except NormalizationError as e:
        raise SystemExit(str(e)) from e


def run_report(
    collection: SessionCollection,
    sources: Sequence[BoardFeatureSource],
    cfg: BuilderConfig,
    km_output_dir: str | None = None,
    normalization_output: str | None = None,
) -> int:
    print(f"Censoring Analysis Report (MAX_TURNS={collection.max_turns})")
    print("=" * 42)
    print()
    print_legend()
    print()
    analyze_overall_censoring(collection)
    print()
    analyze_by_capture_phase(collection)
    print()
    analyze_by_evaluator(collection)
    print()

    for source in sources:
        stats = feature_survival_stats(collection, source, cfg.median_method)
        display_feature_statistics(source, stats)
        if km_output_dir:
            save_feature_km_curves(km_output_dir, source.id, stats)
        print()

    if normalization_output:
        failed = generate_normalization(collection, sources, normalization_output, FeatureBuilder(cfg))
        return 1 if failed else 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
