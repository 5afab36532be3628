import unittest

import numpy as np

from ground_truth.image_analyzer import ImageAnalysis, analyze, encode_png
from guardrail.history import HistoryStore
from guardrail.state import ExecutionRecord, ResultMetrics
from tool_checks import parameter_validator
from tool_checks.registry import expected_profile, known_tools
from tool_checks.results import IssueCode, Stage


def _two_band_analysis(top=(255, 0, 0), bottom=(0, 0, 255), top_rows=40):
    pixels = np.zeros((100, 100, 4), dtype=np.uint8)
    pixels[:top_rows, :, :3] = top
    pixels[top_rows:, :, :3] = bottom
    pixels[:, :, 3] = 255
    return analyze(encode_png(pixels))


def _color(r, g, b):
    return {"hex": "#{:02x}{:02x}{:02x}".format(r, g, b), "r": r, "g": g, "b": b}


def _record(tool_name, parameters, analysis, confidence=90.0, success=True):
    return ExecutionRecord(
        tool_name=tool_name,
        parameters=parameters,
        success=success,
        confidence=confidence,
        result_metrics=ResultMetrics(pixels_changed=10, percentage_changed=40.0, quality_score=confidence),
        image_snapshot=analysis,
        timestamp=0.0,
    )


class SchemaStageTests(unittest.TestCase):
    def setUp(self):
        self.analysis = _two_band_analysis()

    def test_out_of_bounds_gives_zero_confidence(self):
        verdict = parameter_validator.validate(
            "color_knockout", {"colors": [_color(255, 0, 0)], "tolerance": 150}, self.analysis
        )
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.confidence, 0)
        self.assertEqual(verdict.failed_stage, Stage.SCHEMA)
        self.assertIn(IssueCode.OUT_OF_BOUNDS, verdict.error_codes())
        self.assertIn("tolerance", verdict.errors[0])

    def test_every_schema_violation_is_zero_confidence(self):
        cases = [
            ("upscaler", {"scaleFactor": 0.5}),
            ("upscaler", {"scaleFactor": 11}),
            ("upscaler", {}),
            ("upscaler", {"scaleFactor": True}),
            ("upscaler", {"scaleFactor": 2, "model": "hyper"}),
            ("texture_cut", {"textureType": "dots", "amount": 1.5}),
            ("rotate_flip", {"operation": {"type": "rotate", "angle": 45}}),
            ("color_knockout", {"colors": [{"hex": "#ff0000", "r": 300, "g": 0, "b": 0}]}),
            ("color_knockout", "not a dict"),
            ("no_such_tool", {}),
        ]
        for tool, params in cases:
            with self.subTest(tool=tool, params=params):
                verdict = parameter_validator.validate(tool, params, self.analysis)
                self.assertFalse(verdict.is_valid)
                self.assertEqual(verdict.confidence, 0)
                self.assertTrue(verdict.errors)

    def test_unknown_parameter_only_warns(self):
        verdict = parameter_validator.validate(
            "upscaler", {"scaleFactor": 2, "sharpenAfter": True}, self.analysis
        )
        self.assertTrue(verdict.is_valid)
        self.assertTrue(any("sharpenAfter" in w for w in verdict.warnings))


class GroundTruthStageTests(unittest.TestCase):
    def setUp(self):
        # gray 50% / near-white 50%: the gray is the colour under test
        self.analysis = _two_band_analysis(top=(100, 100, 100), bottom=(250, 250, 250), top_rows=50)

    def _knockout(self, r, g, b):
        return parameter_validator.validate(
            "color_knockout", {"colors": [_color(r, g, b)], "tolerance": 30}, self.analysis
        )

    def test_color_exactly_at_match_distance_is_accepted(self):
        verdict = self._knockout(130, 100, 100)
        self.assertTrue(verdict.is_valid)
        self.assertNotIn(IssueCode.WEAK_COLOR_MATCH, [i.code for i in verdict.issues])

    def test_color_one_unit_beyond_match_warns(self):
        verdict = self._knockout(131, 100, 100)
        self.assertTrue(verdict.is_valid)
        self.assertIn(IssueCode.WEAK_COLOR_MATCH, [i.code for i in verdict.issues])
        self.assertLessEqual(verdict.confidence, 80)

    def test_color_beyond_close_distance_is_an_error(self):
        verdict = self._knockout(151, 100, 100)
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.failed_stage, Stage.GROUND_TRUTH)
        self.assertIn("nearest distance 51.0", verdict.errors[0])

    def test_missing_color_cites_nearest_distance(self):
        analysis = _two_band_analysis()
        verdict = parameter_validator.validate(
            "color_knockout", {"colors": [_color(0, 255, 0)]}, analysis
        )
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.errors, ["color #00ff00 not found in image, nearest distance 360.6"])

    def test_knockout_of_forty_percent_color_is_valid(self):
        analysis = _two_band_analysis()
        verdict = parameter_validator.validate(
            "color_knockout", {"colors": [_color(255, 0, 0)], "tolerance": 30}, analysis
        )
        self.assertTrue(verdict.is_valid)
        self.assertEqual(verdict.errors, [])
        self.assertEqual(verdict.confidence, 75)
        self.assertIn("Estimated coverage: 40.0%", verdict.reasoning)

    def test_knockout_of_whole_image_exceeds_coverage_limit(self):
        analysis = _two_band_analysis()
        verdict = parameter_validator.validate(
            "color_knockout", {"colors": [_color(255, 0, 0), _color(0, 0, 255)]}, analysis
        )
        self.assertFalse(verdict.is_valid)
        self.assertIn(IssueCode.COVERAGE_LIMIT, verdict.error_codes())

    def test_upscale_past_size_limit_is_rejected_for_any_scale(self):
        analysis = ImageAnalysis(width=5000, height=4000, aspect_ratio="5:4", sharpness=80, is_blurry=False)
        for scale in (1, 2, 4, 10):
            with self.subTest(scale=scale):
                verdict = parameter_validator.validate("upscaler", {"scaleFactor": scale}, analysis)
                self.assertFalse(verdict.is_valid)
                self.assertEqual(verdict.error_codes(), [IssueCode.SIZE_LIMIT])
                self.assertIn("exceeds maximum 16MP", verdict.errors[0])

    def test_upscale_size_limit_suggests_a_scale(self):
        analysis = ImageAnalysis(width=2000, height=2000, aspect_ratio="1:1", sharpness=80, is_blurry=False)
        verdict = parameter_validator.validate("upscaler", {"scaleFactor": 4}, analysis)
        self.assertFalse(verdict.is_valid)
        self.assertIn("Reduce scale factor to <=2x", verdict.errors[0])

    def test_pick_color_outside_image(self):
        verdict = parameter_validator.validate("pick_color_at_position", {"x": 100, "y": 5}, self.analysis)
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.error_codes(), [IssueCode.OUT_OF_IMAGE])

    def test_recolor_index_must_exist(self):
        verdict = parameter_validator.validate(
            "recolor_image",
            {"colorMappings": [{"originalIndex": 5, "newColor": "#00ff00"}]},
            self.analysis,
        )
        self.assertFalse(verdict.is_valid)
        self.assertIn(IssueCode.INVALID_INDEX, verdict.error_codes())

    def test_custom_texture_is_unsupported(self):
        verdict = parameter_validator.validate("texture_cut", {"textureType": "custom"}, self.analysis)
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.error_codes(), [IssueCode.UNSUPPORTED_OPTION])

    def test_auto_crop_with_absent_background_only_warns(self):
        verdict = parameter_validator.validate("auto_crop", {"backgroundColor": "red"}, self.analysis)
        self.assertTrue(verdict.is_valid)
        self.assertLessEqual(verdict.confidence, 60)

    def test_validation_is_idempotent(self):
        history = HistoryStore(records=[
            _record("color_knockout", {"tolerance": 20}, self.analysis) for _ in range(3)
        ])
        params = {"colors": [_color(131, 100, 100)], "tolerance": 45}
        first = parameter_validator.validate("color_knockout", params, self.analysis, history)
        second = parameter_validator.validate("color_knockout", params, self.analysis, history)
        self.assertEqual(first, second)
        self.assertEqual(params["tolerance"], 45)


class HistoryStageTests(unittest.TestCase):
    def setUp(self):
        self.analysis = _two_band_analysis()
        self.params = {"colors": [_color(255, 0, 0)], "tolerance": 30}

    def test_empty_history_uses_default_confidence(self):
        verdict = parameter_validator.validate("color_knockout", self.params, self.analysis, HistoryStore())
        self.assertEqual(verdict.historical_confidence, 75)
        self.assertIsNone(verdict.adjusted_parameters)

    def test_history_confidence_caps_final_confidence(self):
        history = HistoryStore(records=[_record("color_knockout", {"tolerance": 30}, self.analysis, 88)])
        verdict = parameter_validator.validate("color_knockout", self.params, self.analysis, history)
        self.assertEqual(verdict.historical_confidence, 88)
        self.assertEqual(verdict.confidence, 88)

    def test_low_historical_confidence_warns(self):
        history = HistoryStore(records=[_record("color_knockout", {"tolerance": 30}, self.analysis, 60)])
        verdict = parameter_validator.validate("color_knockout", self.params, self.analysis, history)
        self.assertTrue(verdict.is_valid)
        self.assertEqual(verdict.confidence, 60)
        self.assertIn(IssueCode.LOW_HISTORICAL_CONFIDENCE, [i.code for i in verdict.issues])

    def test_deviation_from_centroid_is_nudged(self):
        history = HistoryStore(records=[
            _record("color_knockout", {"tolerance": t}, self.analysis) for t in (8, 10, 12)
        ])
        params = {"colors": [_color(255, 0, 0)], "tolerance": 40}
        verdict = parameter_validator.validate("color_knockout", params, self.analysis, history)
        self.assertTrue(verdict.is_valid)
        self.assertEqual(verdict.adjusted_parameters["tolerance"], 25.0)
        self.assertEqual(verdict.adjusted_parameters["colors"], params["colors"])
        self.assertIn(IssueCode.HISTORICAL_DEVIATION, [i.code for i in verdict.issues])

    def test_fewer_than_three_similar_records_do_not_nudge(self):
        history = HistoryStore(records=[
            _record("color_knockout", {"tolerance": 10}, self.analysis) for _ in range(2)
        ])
        params = {"colors": [_color(255, 0, 0)], "tolerance": 40}
        verdict = parameter_validator.validate("color_knockout", params, self.analysis, history)
        self.assertIsNone(verdict.adjusted_parameters)

    def test_failed_and_other_tool_records_are_ignored(self):
        history = HistoryStore(records=[
            _record("color_knockout", {"tolerance": 10}, self.analysis, 20, success=False),
            _record("upscaler", {"scaleFactor": 2}, self.analysis, 20),
        ])
        verdict = parameter_validator.validate("color_knockout", self.params, self.analysis, history)
        self.assertEqual(verdict.historical_confidence, 75)


class RegistryTests(unittest.TestCase):
    def test_every_tool_has_a_profile(self):
        for name in known_tools():
            self.assertIsNotNone(expected_profile(name))
        self.assertIsNone(expected_profile("nope"))

    def test_knockout_profile_follows_replace_mode(self):
        self.assertTrue(expected_profile("color_knockout", {"colors": []}).requires_transparency)
        self.assertFalse(expected_profile("color_knockout", {"colors": [], "replaceMode": "color"}).requires_transparency)
        self.assertFalse(expected_profile("background_remover", {"backgroundColor": "#ffffff"}).requires_transparency)


if __name__ == "__main__":
    unittest.main()
