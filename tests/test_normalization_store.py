import json
import os
import tempfile
import threading
import unittest

from board_features import get_source
from errors import LoadFailure, ValidationError, WindowMismatchError
from feature_builder import BuilderConfig, FeatureBuilder
from normalization_store import (
    METHOD,
    load_normalization_params,
    load_table_km_features,
    params_to_payload,
    save_normalization_params,
)
from session_data import Observation


def _observations(shift: int = 0) -> list:
    obs = []
    for value, count in ((0, 12), (1, 30), (2, 25), (4, 20), (5, 13)):
        for i in range(count):
            censored = value == 0 and i % 2 == 0
            obs.append(Observation(value, 300 - 50 * value + 3 * i + shift, censored))
    return obs


class NormalizationStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "out", "km_normalization.json")
        self.builder = FeatureBuilder(BuilderConfig(min_samples_per_value=5, workers=2))
        self.report = self.builder.compute_params({
            "num_holes": _observations(),
            "max_height": _observations(shift=7),
        })

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, payload) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(payload, f)

    def test_payload_schema(self):
        payload = params_to_payload(self.report.params, 500)
        self.assertEqual(payload["observation_window"], 500)
        self.assertEqual(payload["method"], METHOD)
        feature = payload["features"]["num_holes"]
        diag = feature["diagnostics"]
        for key in ("p05_value", "p95_value", "p05_survival", "p95_survival", "unique_value_count"):
            self.assertIn(key, diag)
        table = feature["transform_table"]
        keys = sorted(int(k) for k in table)
        self.assertEqual(keys, list(range(diag["p05_value"], diag["p95_value"] + 1)))
        self.assertLessEqual(feature["range"]["min_survival"], feature["range"]["max_survival"])

    def test_round_trip_preserves_evaluation(self):
        save_normalization_params(self.path, self.report.params, 500)
        self.assertFalse(os.path.exists(self.path + ".tmp"))
        sources = [get_source("num_holes"), get_source("max_height")]
        before = [self.builder.build_table_km_feature(s, self.report) for s in sources]
        after = load_table_km_features(self.path, sources, expected_window=500)
        self.assertEqual([f.id for f in after], [f.id for f in before])
        for b, a in zip(before, after):
            for raw in range(0, 12):
                self.assertLess(abs(b.evaluate_raw(raw) - a.evaluate_raw(raw)), 1e-6)

    def test_window_mismatch_is_rejected(self):
        save_normalization_params(self.path, self.report.params, 500)
        with self.assertRaises(WindowMismatchError) as ctx:
            load_normalization_params(self.path, expected_window=1000)
        self.assertIsInstance(ctx.exception, ValidationError)
        self.assertEqual(ctx.exception.found, 500)

    def test_missing_file(self):
        with self.assertRaises(LoadFailure):
            load_normalization_params(self.path, expected_window=500)

    def test_corrupt_json(self):
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write('{"observation_window": 500, "method"')
        with self.assertRaises(LoadFailure):
            load_normalization_params(self.path, expected_window=500)

    def test_wrong_method(self):
        payload = params_to_payload(self.report.params, 500)
        payload["method"] = "robust_km"
        self._write(payload)
        with self.assertRaises(LoadFailure):
            load_normalization_params(self.path, expected_window=500)

    def test_one_bad_feature_fails_the_whole_load(self):
        payload = params_to_payload(self.report.params, 500)
        table = payload["features"]["max_height"]["transform_table"]
        del table[sorted(table, key=int)[1]]
        self._write(payload)
        with self.assertRaises(LoadFailure):
            load_normalization_params(self.path, expected_window=500)

    def test_missing_diagnostics_key(self):
        payload = params_to_payload(self.report.params, 500)
        del payload["features"]["num_holes"]["diagnostics"]["unique_value_count"]
        self._write(payload)
        with self.assertRaisesRegex(LoadFailure, "unique_value_count"):
            load_normalization_params(self.path, expected_window=500)

    def test_diagnostics_must_match_table_domain(self):
        payload = params_to_payload(self.report.params, 500)
        payload["features"]["num_holes"]["diagnostics"]["p95_value"] += 1
        self._write(payload)
        with self.assertRaisesRegex(LoadFailure, "transform_table covers"):
            load_normalization_params(self.path, expected_window=500)

    def test_diagnostics_values_are_type_checked(self):
        for key, bad in (("p05_value", "0"), ("unique_value_count", True), ("p95_survival", None)):
            payload = params_to_payload(self.report.params, 500)
            payload["features"]["max_height"]["diagnostics"][key] = bad
            self._write(payload)
            with self.assertRaisesRegex(LoadFailure, key):
                load_normalization_params(self.path, expected_window=500)

    def test_save_leaves_no_temp_files(self):
        save_normalization_params(self.path, self.report.params, 500)
        save_normalization_params(self.path, self.report.params, 500)
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["km_normalization.json"])

    def test_concurrent_saves_produce_a_valid_file(self):
        errors = []

        def writer():
            try:
                for _ in range(5):
                    save_normalization_params(self.path, self.report.params, 500)
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        loaded = load_normalization_params(self.path, expected_window=500)
        self.assertEqual(sorted(loaded), ["max_height", "num_holes"])
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["km_normalization.json"])

    def test_non_numeric_range(self):
        payload = params_to_payload(self.report.params, 500)
        payload["features"]["num_holes"]["range"]["max_survival"] = "lots"
        self._write(payload)
        with self.assertRaises(LoadFailure):
            load_normalization_params(self.path, expected_window=500)

    def test_requested_source_missing_from_file(self):
        save_normalization_params(self.path, self.report.params, 500)
        with self.assertRaisesRegex(LoadFailure, "total_height"):
            load_table_km_features(self.path, [get_source("total_height")], expected_window=500)


if __name__ == "__main__":
    unittest.main()
