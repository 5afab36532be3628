import unittest

import numpy as np

from ground_truth.image_analyzer import ImageAnalysis, analyze, encode_png
from tool_checks import result_validator
from tool_checks.registry import ExpectedOperationProfile, OperationKind
from tool_checks.result_validator import compare_pixels, quality_score
from tool_checks.results import MismatchKind


def _two_band(width=100, height=100, top_rows=40):
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[:top_rows, :, :3] = (255, 0, 0)
    pixels[top_rows:, :, :3] = (0, 0, 255)
    pixels[:, :, 3] = 255
    return pixels


def _knock_out_red(pixels):
    out = pixels.copy()
    red = (pixels[:, :, 0] == 255) & (pixels[:, :, 2] == 0)
    out[red, 3] = 0
    return out


class PixelComparisonTests(unittest.TestCase):
    def test_identical_images(self):
        pixels = _two_band()
        comparison = compare_pixels(pixels, pixels.copy())
        self.assertEqual(comparison.pixels_changed, 0)
        self.assertEqual(comparison.percentage_changed, 0.0)

    def test_small_deltas_are_ignored(self):
        pixels = _two_band()
        noisy = pixels.copy()
        noisy[:, :, 2] = np.clip(noisy[:, :, 2].astype(int) - 5, 0, 255).astype(np.uint8)
        self.assertEqual(compare_pixels(pixels, noisy).pixels_changed, 0)

    def test_changed_fraction(self):
        pixels = _two_band()
        comparison = compare_pixels(pixels, _knock_out_red(pixels))
        self.assertEqual(comparison.pixels_changed, 4000)
        self.assertAlmostEqual(comparison.percentage_changed, 40.0)
        self.assertAlmostEqual(comparison.max_delta, 255.0)
        self.assertEqual(comparison.color_shift_amount, 0.0)

    def test_size_change_counts_non_overlapping_pixels(self):
        before = np.zeros((10, 10, 4), dtype=np.uint8)
        after = np.zeros((20, 10, 4), dtype=np.uint8)
        comparison = compare_pixels(before, after)
        self.assertEqual(comparison.total_pixels, 200)
        self.assertEqual(comparison.pixels_changed, 100)
        self.assertAlmostEqual(comparison.percentage_changed, 50.0)

    def test_large_overlap_is_sampled(self):
        before = np.zeros((2100, 2100, 4), dtype=np.uint8)
        after = before.copy()
        after[:1050, :, 3] = 255
        comparison = compare_pixels(before, after)
        self.assertGreater(comparison.sample_stride, 1)
        self.assertAlmostEqual(comparison.percentage_changed, 50.0, delta=0.5)


class QualityScoreTests(unittest.TestCase):
    def _analysis(self, **kw):
        base = dict(width=10, height=10, sharpness=60.0, noise_level=5.0, confidence=100.0)
        base.update(kw)
        return ImageAnalysis(**base)

    def test_unchanged_quality(self):
        self.assertEqual(quality_score(self._analysis(), self._analysis(), True, False), 100)

    def test_penalties_and_bonus(self):
        before = self._analysis()
        self.assertEqual(quality_score(before, self._analysis(sharpness=40.0), True, False), 85)
        self.assertEqual(quality_score(before, self._analysis(noise_level=20.0), True, False), 90)
        self.assertEqual(quality_score(before, self._analysis(), False, False), 80)
        self.assertEqual(quality_score(before, self._analysis(), False, True), 100)
        self.assertEqual(
            quality_score(before, self._analysis(is_print_ready=True, confidence=85.0), True, False), 95
        )

    def test_score_is_clamped(self):
        before = self._analysis()
        after = self._analysis(sharpness=0.0, noise_level=90.0, confidence=10.0)
        self.assertEqual(quality_score(before, after, False, False), 0)


class ResultValidatorTests(unittest.TestCase):
    def setUp(self):
        self.pixels = _two_band()
        self.before = encode_png(self.pixels)

    def test_knockout_of_forty_percent(self):
        after = encode_png(_knock_out_red(self.pixels))
        result = result_validator.validate("color_knockout", self.before, after, parameters={"colors": []})
        self.assertTrue(result.success, result.reasoning)
        self.assertAlmostEqual(result.percentage_changed, 40.0, places=1)
        self.assertTrue(result.significant_change)
        self.assertIsNone(result.mismatch)
        self.assertEqual(result.quality_score, 100)

    def test_no_change_fails_for_modifying_tools(self):
        for tool, params in (
            ("color_knockout", {"colors": []}),
            ("recolor_image", {"colorMappings": []}),
            ("texture_cut", {"textureType": "dots"}),
        ):
            with self.subTest(tool=tool):
                result = result_validator.validate(tool, self.before, self.before, parameters=params)
                self.assertFalse(result.success)
                self.assertEqual(result.pixels_changed, 0)
                self.assertEqual(result.mismatch, MismatchKind.NO_CHANGE)

    def test_no_change_is_fine_for_info_tools(self):
        result = result_validator.validate("extract_color_palette", self.before, self.before)
        self.assertTrue(result.success)
        self.assertEqual(result.quality_score, 100)

    def test_zero_change_fails_even_with_permissive_profile(self):
        profile = ExpectedOperationProfile(OperationKind.COLOR_REMAP, min_change_pct=0.0)
        result = result_validator.validate("recolor_image", self.before, self.before, expected_profile=profile)
        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.NO_CHANGE)

    def test_over_destructive_knockout(self):
        gone = self.pixels.copy()
        gone[:, :, 3] = 0
        result = result_validator.validate("color_knockout", self.before, encode_png(gone))
        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.OVER_DESTRUCTIVE)

    def test_knockout_without_transparency(self):
        recolored = self.pixels.copy()
        recolored[:40, :, :3] = (0, 255, 0)
        result = result_validator.validate("color_knockout", self.before, encode_png(recolored))
        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.MISSING_TRANSPARENCY)

    def test_color_replace_mode_needs_no_transparency(self):
        recolored = self.pixels.copy()
        recolored[:40, :, :3] = (0, 255, 0)
        result = result_validator.validate(
            "color_knockout", self.before, encode_png(recolored),
            parameters={"colors": [], "replaceMode": "color"},
        )
        self.assertTrue(result.success, result.reasoning)

    def test_recolor_must_keep_dimensions(self):
        bigger = np.zeros((120, 100, 4), dtype=np.uint8)
        bigger[:, :, 3] = 255
        result = result_validator.validate("recolor_image", self.before, encode_png(bigger))
        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.DIMENSIONS_MISMATCH)

    def test_upscaler_needs_larger_output(self):
        same = result_validator.validate("upscaler", self.before, self.before, parameters={"scaleFactor": 2})
        self.assertFalse(same.success)
        self.assertEqual(same.mismatch, MismatchKind.DIMENSIONS_UNCHANGED)

        doubled = np.repeat(np.repeat(self.pixels, 2, axis=0), 2, axis=1)
        result = result_validator.validate("upscaler", self.before, encode_png(doubled), parameters={"scaleFactor": 2})
        self.assertTrue(result.success, result.reasoning)
        self.assertEqual(result.after_size, (200, 200))

    def test_rotate_must_match_target_size(self):
        pixels = _two_band(width=60, height=40, top_rows=10)
        before = encode_png(pixels)
        params = {"operation": {"type": "rotate", "angle": 90}}
        rotated = result_validator.validate("rotate_flip", before, encode_png(np.rot90(pixels)), parameters=params)
        self.assertTrue(rotated.success, rotated.reasoning)

        flipped = result_validator.validate("rotate_flip", before, encode_png(pixels[::-1]), parameters=params)
        self.assertFalse(flipped.success)
        self.assertEqual(flipped.mismatch, MismatchKind.DIMENSIONS_MISMATCH)

    def test_auto_crop_must_shrink(self):
        cropped = self.pixels[10:90, 10:90]
        result = result_validator.validate("auto_crop", self.before, encode_png(cropped))
        self.assertTrue(result.success, result.reasoning)
        grown = np.zeros((110, 110, 4), dtype=np.uint8)
        result = result_validator.validate("auto_crop", self.before, encode_png(grown))
        self.assertEqual(result.mismatch, MismatchKind.DIMENSIONS_MISMATCH)

    def test_file_size_explosion_warns_and_costs_quality(self):
        rng = np.random.default_rng(7)
        noisy = self.pixels.copy()
        noisy[40:, :, :3] = rng.integers(0, 256, size=(60, 100, 3), dtype=np.uint8)
        after = encode_png(noisy)
        profile = ExpectedOperationProfile(OperationKind.STRUCTURAL)

        result = result_validator.validate("texture_cut", self.before, after, expected_profile=profile)

        self.assertTrue(result.success, result.reasoning)
        self.assertTrue(any("File size per pixel increased" in w for w in result.warnings))
        baseline = quality_score(analyze(self.before), analyze(after), True, False)
        self.assertAlmostEqual(result.quality_score, max(0.0, baseline - result_validator.SIZE_GROWTH_PENALTY))

    def test_tiny_result_from_a_large_input_is_rejected(self):
        rng = np.random.default_rng(3)
        before = encode_png(rng.integers(0, 256, size=(100, 100, 4), dtype=np.uint8))
        after = encode_png(np.zeros((1, 1, 4), dtype=np.uint8))
        self.assertLess(len(after), result_validator.MIN_RESULT_BYTES)

        result = result_validator.validate("color_knockout", before, after)

        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.DECODE_ERROR)
        self.assertIn("too small", result.reasoning)

    def test_small_flat_images_are_not_treated_as_corrupt(self):
        after = encode_png(_knock_out_red(self.pixels))
        result = result_validator.validate("color_knockout", self.before, after, parameters={"colors": []})
        self.assertTrue(result.success, result.reasoning)
        self.assertFalse(any("File size" in w for w in result.warnings))

    def test_undecodable_result_never_raises(self):
        result = result_validator.validate("color_knockout", self.before, b"garbage")
        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.DECODE_ERROR)
        self.assertEqual(result.quality_score, 0)

    def test_unknown_tool_fails(self):
        result = result_validator.validate("nope", self.before, self.before)
        self.assertFalse(result.success)
        self.assertEqual(result.mismatch, MismatchKind.INTERNAL_ERROR)

    def test_summary_reports_status(self):
        result = result_validator.validate("color_knockout", self.before, self.before)
        summary = result_validator.format_result_summary(result)
        self.assertIn("Status: FAILED", summary)
        self.assertIn("Mismatch: no_change", summary)


if __name__ == "__main__":
    unittest.main()
