import json
import os
import tempfile
import unittest

from errors import LoadFailure, NoDataError, ValidationError
from session_data import (
    EpisodeRecord,
    Observation,
    SessionCollection,
    aggregate_observations,
    capture_phase,
    capture_phase_range,
    collect_by_group,
    load_session_collection,
    observations_from_episodes,
    observations_from_sessions,
)


def _payload() -> dict:
    return {
        "max_turns": 100,
        "sessions": [
            {
                "placement_evaluator": "aggro",
                "survived_turns": 40,
                "is_game_over": True,
                "boards": [{"turn": 0, "board": 2}, {"turn": 30, "board": 5}],
            },
            {
                "placement_evaluator": "defensive",
                "survived_turns": 100,
                "is_game_over": False,
                "boards": [{"turn": 10, "board": 2}],
            },
        ],
    }


class SessionCollectionTests(unittest.TestCase):
    def test_from_dict_parses_sessions(self):
        collection = SessionCollection.from_dict(_payload())
        self.assertEqual(collection.max_turns, 100)
        self.assertEqual(len(collection.sessions), 2)
        self.assertEqual(collection.total_boards, 3)
        self.assertFalse(collection.sessions[0].censored)
        self.assertTrue(collection.sessions[1].censored)

    def test_missing_window_is_validation_error(self):
        payload = _payload()
        del payload["max_turns"]
        with self.assertRaises(ValidationError):
            SessionCollection.from_dict(payload)

    def test_board_after_session_end_is_rejected(self):
        payload = _payload()
        payload["sessions"][0]["boards"][1]["turn"] = 41
        with self.assertRaisesRegex(ValidationError, "session 0 board 1"):
            SessionCollection.from_dict(payload)

    def test_negative_survival_is_rejected(self):
        payload = _payload()
        payload["sessions"][1]["survived_turns"] = -1
        with self.assertRaisesRegex(ValidationError, "session 1"):
            SessionCollection.from_dict(payload)

    def test_load_missing_file_is_load_failure(self):
        with self.assertRaises(LoadFailure):
            load_session_collection(os.path.join(tempfile.gettempdir(), "no-such-boards.json"))

    def test_load_corrupt_file_is_load_failure(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "boards.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write("{not json")
            with self.assertRaises(LoadFailure):
                load_session_collection(path)

    def test_load_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "boards.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(_payload(), f)
            collection = load_session_collection(path)
        self.assertEqual(collection.sessions[0].placement_evaluator, "aggro")


class ObservationTests(unittest.TestCase):
    def test_observations_from_sessions(self):
        collection = SessionCollection.from_dict(_payload())
        obs = list(observations_from_sessions(collection.sessions, lambda board: board))
        self.assertEqual(
            obs,
            [
                Observation(2, 40, False),
                Observation(5, 10, False),
                Observation(2, 90, True),
            ],
        )

    def test_negative_extracted_value_is_rejected(self):
        collection = SessionCollection.from_dict(_payload())
        with self.assertRaisesRegex(ValidationError, "raw_value"):
            list(observations_from_sessions(collection.sessions, lambda board: -1))

    def test_extractor_failure_names_the_board(self):
        collection = SessionCollection.from_dict(_payload())

        def extract(board):
            if board == 5:
                raise TypeError("not a grid")
            return board

        with self.assertRaisesRegex(ValidationError, "session 0 board 1: cannot extract"):
            list(observations_from_sessions(collection.sessions, extract))

    def test_extractor_validation_error_gains_location(self):
        collection = SessionCollection.from_dict(_payload())

        def extract(board):
            raise ValidationError("board row 2: unknown cell '?'")

        with self.assertRaisesRegex(ValidationError, r"session 0 board 0: board row 2"):
            list(observations_from_sessions(collection.sessions, extract))

    def test_bool_value_is_not_an_integer(self):
        with self.assertRaises(ValidationError):
            Observation(True, 3, False).validated()

    def test_episode_samples(self):
        episodes = [
            EpisodeRecord.from_dict({"samples": [[1, 10, False], {"raw_feature_value": 2, "remaining_turns": 0, "censored": True}]}),
            EpisodeRecord.from_dict({"samples": []}),
        ]
        obs = list(observations_from_episodes(episodes))
        self.assertEqual(obs, [Observation(1, 10, False), Observation(2, 0, True)])

    def test_episode_with_bad_sample_names_it(self):
        with self.assertRaisesRegex(ValidationError, "sample 1"):
            EpisodeRecord.from_dict({"samples": [[1, 10, False], [1, -3, False]]})


class AggregationTests(unittest.TestCase):
    def test_groups_are_sorted_by_value(self):
        obs = [Observation(3, 5, False), Observation(1, 7, True), Observation(3, 5, True), Observation(1, 2, False)]
        groups = aggregate_observations(obs, "num_holes")
        self.assertEqual(list(groups), [1, 3])
        self.assertEqual(groups[3].count, 2)
        self.assertEqual(groups[3].censored_count, 1)
        self.assertEqual(groups[1].max_time, 7)

    def test_event_table(self):
        obs = [Observation(0, 5, False), Observation(0, 5, False), Observation(0, 10, True), Observation(0, 5, True)]
        table = aggregate_observations(obs, "f")[0].event_table()
        self.assertEqual(table, [(5, 2, 1), (10, 0, 1)])

    def test_empty_input_is_no_data(self):
        with self.assertRaises(NoDataError) as ctx:
            aggregate_observations([], "max_height")
        self.assertEqual(ctx.exception.feature_id, "max_height")

    def test_collect_by_evaluator(self):
        collection = SessionCollection.from_dict(_payload())
        grouped = collect_by_group(collection.sessions, lambda s, _b: s.placement_evaluator)
        self.assertEqual(grouped["aggro"], [(40, False), (10, False)])
        self.assertEqual(grouped["defensive"], [(90, True)])


class CapturePhaseTests(unittest.TestCase):
    def test_quarters(self):
        self.assertEqual(capture_phase(0, 500), "Early")
        self.assertEqual(capture_phase(124, 500), "Early")
        self.assertEqual(capture_phase(125, 500), "Mid")
        self.assertEqual(capture_phase(250, 500), "Late")
        self.assertEqual(capture_phase(375, 500), "Very Late")
        self.assertEqual(capture_phase(500, 500), "Very Late")

    def test_ranges_match_phases(self):
        self.assertEqual(capture_phase_range("Early", 500), (0, 125))
        self.assertEqual(capture_phase_range("Very Late", 500), (375, 500))


if __name__ == "__main__":
    unittest.main()
