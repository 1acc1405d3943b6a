"""
session_data.py

Recorded gameplay sessions and the observation aggregator.

Sessions end in one of two ways:
  - game over before the turn limit   -> the death was observed
  - reached the turn limit (max_turns) -> right-censored, true survival unknown

Every captured board becomes one Observation per feature:
  time_to_event = survived_turns - board.turn
  censored      = not is_game_over

Observations are grouped by raw feature value into ValueGroups, which is
all the Kaplan-Meier stage needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import numbers
from typing import Any, Callable, Hashable, Iterable, Iterator, Mapping

import numpy as np

from errors import LoadFailure, NoDataError, ValidationError


def _require_count(value: Any, label: str, where: str) -> int:
    # bool is an int subclass; a True/False feature value is a schema error
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ValidationError(f"{where}: {label} must be a non-negative integer, got {value!r}")
    if value < 0:
        raise ValidationError(f"{where}: {label} must be non-negative, got {value}")
    return int(value)


def _require_bool(value: Any, label: str, where: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{where}: {label} must be a boolean, got {value!r}")
    return value


@dataclass(frozen=True)
class Observation:
    raw_value: int
    time_to_event: int
    censored: bool

    def validated(self, where: str = "observation") -> "Observation":
        return Observation(
            raw_value=_require_count(self.raw_value, "raw_value", where),
            time_to_event=_require_count(self.time_to_event, "time_to_event", where),
            censored=_require_bool(self.censored, "censored", where),
        )


@dataclass
class EpisodeRecord:
    """Pre-extracted samples of one feature for one episode."""

    samples: list[tuple[int, int, bool]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], where: str = "episode") -> "EpisodeRecord":
        raw = payload.get("samples")
        if not isinstance(raw, list):
            raise ValidationError(f"{where}: 'samples' must be a list")
        samples = []
        for idx, row in enumerate(raw):
            loc = f"{where} sample {idx}"
            if isinstance(row, Mapping):
                row = (row.get("raw_feature_value"), row.get("remaining_turns"), row.get("censored"))
            if not isinstance(row, (list, tuple)) or len(row) != 3:
                raise ValidationError(f"{loc}: expected (raw_feature_value, remaining_turns, censored)")
            samples.append(
                (
                    _require_count(row[0], "raw_feature_value", loc),
                    _require_count(row[1], "remaining_turns", loc),
                    _require_bool(row[2], "censored", loc),
                )
            )
        return cls(samples=samples)


@dataclass(frozen=True)
class BoardSnapshot:
    turn: int
    board: Any


@dataclass(frozen=True)
class SessionRecord:
    placement_evaluator: str
    survived_turns: int
    is_game_over: bool
    boards: tuple[BoardSnapshot, ...]

    @property
    def censored(self) -> bool:
        return not self.is_game_over


@dataclass(frozen=True)
class SessionCollection:
    """Output of the board-generation run: sessions plus the observation window."""

    max_turns: int
    sessions: tuple[SessionRecord, ...]

    @property
    def total_boards(self) -> int:
        return sum(len(s.boards) for s in self.sessions)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionCollection":
        if not isinstance(payload, Mapping):
            raise ValidationError("session collection: expected a JSON object")
        if "max_turns" not in payload:
            raise ValidationError("session collection: missing observation window 'max_turns'")
        max_turns = _require_count(payload["max_turns"], "max_turns", "session collection")
        raw_sessions = payload.get("sessions")
        if not isinstance(raw_sessions, list):
            raise ValidationError("session collection: 'sessions' must be a list")

        sessions = []
        for s_idx, raw in enumerate(raw_sessions):
            where = f"session {s_idx}"
            if not isinstance(raw, Mapping):
                raise ValidationError(f"{where}: expected an object")
            survived = _require_count(raw.get("survived_turns"), "survived_turns", where)
            is_game_over = _require_bool(raw.get("is_game_over"), "is_game_over", where)
            raw_boards = raw.get("boards", [])
            if not isinstance(raw_boards, list):
                raise ValidationError(f"{where}: 'boards' must be a list")
            boards = []
            for b_idx, board in enumerate(raw_boards):
                b_where = f"{where} board {b_idx}"
                if not isinstance(board, Mapping):
                    raise ValidationError(f"{b_where}: expected an object")
                turn = _require_count(board.get("turn"), "turn", b_where)
                if turn > survived:
                    raise ValidationError(
                        f"{b_where}: turn {turn} is after the session end ({survived})"
                    )
                if "board" not in board:
                    raise ValidationError(f"{b_where}: missing 'board'")
                boards.append(BoardSnapshot(turn=turn, board=board["board"]))
            sessions.append(
                SessionRecord(
                    placement_evaluator=str(raw.get("placement_evaluator", "unknown")),
                    survived_turns=survived,
                    is_game_over=is_game_over,
                    boards=tuple(boards),
                )
            )
        return cls(max_turns=max_turns, sessions=tuple(sessions))


def load_session_collection(path: str) -> SessionCollection:
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError as e:
        raise LoadFailure(f"session file not found: {path}") from e
    except (OSError, ValueError) as e:
        raise LoadFailure(f"failed to read session file {path}: {e}") from e
    return SessionCollection.from_dict(payload)


def observations_from_sessions(
    sessions: Iterable[SessionRecord],
    extract: Callable[[Any], int],
) -> Iterator[Observation]:
    """Replay sessions and yield one observation per captured board."""
    for s_idx, session in enumerate(sessions):
        for b_idx, snap in enumerate(session.boards):
            where = f"session {s_idx} board {b_idx}"
            if snap.turn > session.survived_turns:
                raise ValidationError(
                    f"{where}: turn {snap.turn} is after the session end ({session.survived_turns})"
                )
            try:
                raw_value = extract(snap.board)
            except ValidationError as e:
                raise ValidationError(f"{where}: {e}") from e
            except (TypeError, ValueError, IndexError) as e:
                raise ValidationError(f"{where}: cannot extract feature value: {e}") from e
            yield Observation(
                raw_value=raw_value,
                time_to_event=session.survived_turns - snap.turn,
                censored=session.censored,
            ).validated(where)


def observations_from_episodes(episodes: Iterable[EpisodeRecord]) -> Iterator[Observation]:
    for e_idx, episode in enumerate(episodes):
        for s_idx, (raw_value, remaining, censored) in enumerate(episode.samples):
            yield Observation(raw_value, remaining, censored).validated(f"episode {e_idx} sample {s_idx}")


@dataclass(frozen=True, eq=False)
class ValueGroup:
    """All observations sharing one raw feature value."""

    raw_value: int
    times: np.ndarray
    censored: np.ndarray

    @property
    def count(self) -> int:
        return int(self.times.size)

    @property
    def censored_count(self) -> int:
        return int(np.sum(self.censored))

    @property
    def max_time(self) -> int:
        return int(self.times.max()) if self.times.size else 0

    def event_table(self) -> list[tuple[int, int, int]]:
        """(time, deaths, censorings) at each distinct observed time."""
        distinct, inverse = np.unique(self.times, return_inverse=True)
        deaths = np.bincount(inverse, weights=(~self.censored).astype(float), minlength=distinct.size)
        censorings = np.bincount(inverse, weights=self.censored.astype(float), minlength=distinct.size)
        return [
            (int(t), int(d), int(c))
            for t, d, c in zip(distinct.tolist(), deaths.tolist(), censorings.tolist())
        ]


def aggregate_observations(
    observations: Iterable[Observation],
    feature_id: str,
) -> dict[int, ValueGroup]:
    """Group observations by raw value, ascending.  Empty input is NoDataError."""
    times: dict[int, list[int]] = {}
    flags: dict[int, list[bool]] = {}
    for obs in observations:
        times.setdefault(obs.raw_value, []).append(obs.time_to_event)
        flags.setdefault(obs.raw_value, []).append(obs.censored)
    if not times:
        raise NoDataError(feature_id)
    return {
        value: ValueGroup(
            raw_value=value,
            times=np.asarray(times[value], dtype=np.int64),
            censored=np.asarray(flags[value], dtype=bool),
        )
        for value in sorted(times)
    }


def collect_by_group(
    sessions: Iterable[SessionRecord],
    key: Callable[[SessionRecord, BoardSnapshot], Hashable],
) -> dict[Hashable, list[tuple[int, bool]]]:
    """(time, censored) pairs grouped by an arbitrary session/board key."""
    grouped: dict[Hashable, list[tuple[int, bool]]] = {}
    for session in sessions:
        for snap in session.boards:
            grouped.setdefault(key(session, snap), []).append(
                (session.survived_turns - snap.turn, session.censored)
            )
    return grouped


CAPTURE_PHASES = ("Early", "Mid", "Late", "Very Late")


def capture_phase(turn: int, max_turns: int) -> str:
    """Quarter of the observation window a board was captured in."""
    for idx, phase in enumerate(CAPTURE_PHASES[:-1]):
        if turn < (idx + 1) * max_turns // 4:
            return phase
    return CAPTURE_PHASES[-1]


def capture_phase_range(phase: str, max_turns: int) -> tuple[int, int]:
    idx = CAPTURE_PHASES.index(phase)
    return (idx * max_turns // 4, (idx + 1) * max_turns // 4)
