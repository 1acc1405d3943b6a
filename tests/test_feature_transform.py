import dataclasses
import threading
import unittest

from feature_transform import FeatureDefinition, FeatureValue, RawTransform, TableTransform
from normalization import FeatureSignal, NormalizationRange, TransformTable


def _table_feature() -> FeatureDefinition:
    table = TransformTable(min_value=0, values=(500.0, 400.0, 275.0, 150.0, 50.0))
    return FeatureDefinition(
        id="num_holes_table_km",
        name="Number of Holes (KM)",
        source_id="num_holes",
        extract=lambda state: state["holes"],
        transform=TableTransform(table=table, range=NormalizationRange.from_table(table)),
    )


class TableTransformTests(unittest.TestCase):
    def test_evaluate_looks_up_then_normalizes(self):
        feature = _table_feature()
        self.assertEqual(feature.evaluate({"holes": 0}), 1.0)
        self.assertEqual(feature.evaluate({"holes": 4}), 0.0)
        self.assertAlmostEqual(feature.evaluate({"holes": 2}), 0.5)

    def test_out_of_domain_values_clamp(self):
        feature = _table_feature()
        self.assertEqual(feature.evaluate_raw(10 ** 6), feature.evaluate_raw(4))
        self.assertEqual(feature.evaluate_raw(0), 1.0)

    def test_compute_reports_all_stages(self):
        value = _table_feature().compute({"holes": 1})
        self.assertEqual(value.raw, 1)
        self.assertEqual(value.transformed, 400.0)
        self.assertAlmostEqual(value.normalized, 350.0 / 450.0)
        self.assertIsInstance(value, FeatureValue)

    def test_signal_follows_range(self):
        self.assertIs(_table_feature().signal, FeatureSignal.POSITIVE)
        self.assertEqual(_table_feature().transform.kind, "table_km")

    def test_definition_is_frozen(self):
        feature = _table_feature()
        with self.assertRaises(dataclasses.FrozenInstanceError):
            feature.id = "other"

    def test_concurrent_readers_agree(self):
        feature = _table_feature()
        expected = [feature.evaluate_raw(v) for v in range(8)]
        results = []

        def worker():
            results.append([feature.evaluate_raw(v) for v in range(8)])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(results), 8)
        for r in results:
            self.assertEqual(r, expected)


class RawTransformTests(unittest.TestCase):
    def test_penalty_scales_between_percentiles(self):
        feature = FeatureDefinition(
            id="max_height_raw_penalty",
            name="Max Height Penalty",
            source_id="max_height",
            extract=lambda state: state,
            transform=RawTransform(normalize_min=2.0, normalize_max=10.0, signal=FeatureSignal.NEGATIVE),
        )
        self.assertEqual(feature.evaluate(0), 1.0)
        self.assertEqual(feature.evaluate(2), 1.0)
        self.assertAlmostEqual(feature.evaluate(6), 0.5)
        self.assertEqual(feature.evaluate(10), 0.0)
        self.assertEqual(feature.evaluate(25), 0.0)
        self.assertEqual(feature.compute(6).transformed, 6.0)
        self.assertEqual(feature.transform.kind, "raw")

    def test_degenerate_raw_range_is_neutral(self):
        t = RawTransform(normalize_min=3.0, normalize_max=3.0)
        self.assertEqual(t.normalize(t.transform(100)), 0.5)


if __name__ == "__main__":
    unittest.main()
