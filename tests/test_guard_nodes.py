import unittest

from ground_truth.image_analyzer import DominantColor, ImageAnalysis
from guardrail.nodes import (
    _cfg,
    best_attempt,
    decide_after_validation,
    decide_phase,
    derive_adjustment,
    route_after_execute,
    route_after_score,
    route_after_validate,
    suggest_fix,
)
from guardrail.session import DEFAULT_GUARD_CONFIG
from guardrail.state import AttemptRecord, Phase
from tool_checks import parameter_validator
from tool_checks.results import MismatchKind, ResultValidation, ValidationResult


def _analysis(width=100, height=100):
    return ImageAnalysis(
        width=width,
        height=height,
        aspect_ratio="1:1",
        dominant_colors=(
            DominantColor(0, 0, 255, "#0000ff", 0.6, 6000),
            DominantColor(255, 0, 0, "#ff0000", 0.4, 4000),
        ),
        unique_color_count=2,
        sharpness=55.0,
        is_blurry=False,
    )


def _failed(mismatch):
    return ResultValidation(success=False, mismatch=mismatch)


def _attempt(n, confidence, success=False):
    return AttemptRecord(
        attempt=n,
        parameters={},
        phase=Phase.RETRYING,
        result=ResultValidation(success=success, quality_score=confidence),
        confidence=confidence,
    )


class GuardRoutingTests(unittest.TestCase):
    def test_route_after_validate(self):
        self.assertEqual(route_after_validate({"phase": "executing"}), "execute")
        self.assertEqual(route_after_validate({"phase": "rejected"}), "finalize")
        self.assertEqual(route_after_validate({"phase": "exhausted"}), "finalize")
        self.assertEqual(route_after_validate({"phase": "failed"}), "finalize")

    def test_route_after_execute(self):
        self.assertEqual(route_after_execute({"phase": "executing"}), "check_result")
        self.assertEqual(route_after_execute({"phase": "failed"}), "finalize")

    def test_route_after_score(self):
        self.assertEqual(route_after_score({"phase": "retrying"}), "adjust")
        self.assertEqual(route_after_score({"phase": "accepted"}), "finalize")
        self.assertEqual(route_after_score({"phase": "exhausted"}), "finalize")

    def test_cfg_reads_nested_values_with_defaults(self):
        state = {"guard_config": DEFAULT_GUARD_CONFIG}
        self.assertEqual(_cfg(state, "retry", "max_attempts", default=9), 3)
        self.assertEqual(_cfg(state, "concurrency", "timeout_s", default=5), 5)
        self.assertEqual(_cfg(state, "retry", "max_attempts", "deeper", default=1), 1)
        self.assertEqual(_cfg({}, "retry", "max_attempts", default=2), 2)


class PhaseDecisionTests(unittest.TestCase):
    def test_accept_needs_success_and_threshold(self):
        ok = ResultValidation(success=True, quality_score=90)
        self.assertIs(decide_phase(ok, 75, 1, 3, 70), Phase.ACCEPTED)
        self.assertIs(decide_phase(ok, 65, 1, 3, 70), Phase.RETRYING)
        self.assertIs(decide_phase(_failed(MismatchKind.NO_CHANGE), 90, 1, 3, 70), Phase.RETRYING)

    def test_attempt_cap_exhausts(self):
        failed = _failed(MismatchKind.NO_CHANGE)
        self.assertIs(decide_phase(failed, 90, 3, 3, 70), Phase.EXHAUSTED)
        self.assertIs(decide_phase(failed, 90, 5, 3, 70), Phase.EXHAUSTED)
        self.assertIs(decide_phase(ResultValidation(success=True), 90, 3, 3, 70), Phase.ACCEPTED)

    def test_rejection_before_and_after_execution(self):
        invalid = ValidationResult(is_valid=False, confidence=0, errors=["bad"])
        self.assertIs(decide_after_validation(invalid, []), Phase.REJECTED)
        self.assertIs(decide_after_validation(invalid, [_attempt(1, 60)]), Phase.EXHAUSTED)
        valid = ValidationResult(is_valid=True, confidence=80)
        self.assertIs(decide_after_validation(valid, [_attempt(1, 60)]), Phase.EXECUTING)

    def test_best_attempt_is_highest_confidence_earliest_on_ties(self):
        attempts = [_attempt(1, 60), _attempt(2, 72), _attempt(3, 65)]
        self.assertEqual(best_attempt(attempts).attempt, 2)
        tied = [_attempt(1, 72), _attempt(2, 72)]
        self.assertEqual(best_attempt(tied).attempt, 1)
        self.assertIsNone(best_attempt([]))


class AdjustmentTests(unittest.TestCase):
    def setUp(self):
        self.analysis = _analysis()
        self.red = {"hex": "#ff0000", "r": 255, "g": 0, "b": 0}
        self.blue = {"hex": "#0000ff", "r": 0, "g": 0, "b": 255}

    def test_no_change_widens_tolerance_up_to_the_cap(self):
        params, note = derive_adjustment(
            "color_knockout", {"colors": [self.red], "tolerance": 30}, _failed(MismatchKind.NO_CHANGE), self.analysis
        )
        self.assertEqual(params["tolerance"], 40)
        self.assertIn("tolerance", note)
        params, _ = derive_adjustment(
            "color_knockout", {"colors": [self.red], "tolerance": 45}, _failed(MismatchKind.NO_CHANGE), self.analysis
        )
        self.assertEqual(params["tolerance"], 50)
        params, _ = derive_adjustment(
            "color_knockout", {"colors": [self.red], "tolerance": 50}, _failed(MismatchKind.NO_CHANGE), self.analysis
        )
        self.assertIsNone(params)

    def test_no_change_raises_texture_amount(self):
        params, _ = derive_adjustment(
            "texture_cut", {"textureType": "dots", "amount": 0.3}, _failed(MismatchKind.NO_CHANGE), self.analysis
        )
        self.assertEqual(params["amount"], 0.5)

    def test_over_destructive_drops_the_largest_target(self):
        params, note = derive_adjustment(
            "color_knockout",
            {"colors": [self.red, self.blue]},
            _failed(MismatchKind.OVER_DESTRUCTIVE),
            self.analysis,
        )
        self.assertEqual(params["colors"], [self.red])
        self.assertIn("#0000ff", note)

    def test_over_destructive_single_target_narrows(self):
        params, _ = derive_adjustment(
            "color_knockout", {"colors": [self.red], "tolerance": 30},
            _failed(MismatchKind.OVER_DESTRUCTIVE), self.analysis,
        )
        self.assertEqual(params["tolerance"], 20)

    def test_missing_transparency_switches_background_model(self):
        params, _ = derive_adjustment(
            "background_remover", {"model": "bria"}, _failed(MismatchKind.MISSING_TRANSPARENCY), self.analysis
        )
        self.assertEqual(params["model"], "codeplugtech")
        params, _ = derive_adjustment(
            "background_remover", {"backgroundColor": "#ffffff"},
            _failed(MismatchKind.MISSING_TRANSPARENCY), self.analysis,
        )
        self.assertNotIn("backgroundColor", params)
        params, _ = derive_adjustment(
            "background_remover", {"model": "fallback"}, _failed(MismatchKind.MISSING_TRANSPARENCY), self.analysis
        )
        self.assertIsNone(params)

    def test_missing_transparency_restores_transparency_mode(self):
        params, _ = derive_adjustment(
            "color_knockout", {"colors": [self.red], "replaceMode": "mask"},
            _failed(MismatchKind.MISSING_TRANSPARENCY), self.analysis,
        )
        self.assertEqual(params["replaceMode"], "transparency")

    def test_unchanged_upscale_raises_scale(self):
        params, _ = derive_adjustment(
            "upscaler", {"scaleFactor": 1}, _failed(MismatchKind.DIMENSIONS_UNCHANGED), self.analysis
        )
        self.assertEqual(params["scaleFactor"], 2)

    def test_config_controls_step(self):
        config = {"retry": {"tolerance_step": 5, "tolerance_widen_max": 50}}
        params, _ = derive_adjustment(
            "recolor_image", {"colorMappings": [], "tolerance": 30},
            _failed(MismatchKind.NO_CHANGE), self.analysis, config,
        )
        self.assertEqual(params["tolerance"], 35)

    def test_auto_crop_tolerance_steps_on_its_own_scale(self):
        params, _ = derive_adjustment(
            "auto_crop", {"tolerance": 30}, _failed(MismatchKind.DIMENSIONS_UNCHANGED), self.analysis
        )
        self.assertEqual(params["tolerance"], 55.5)
        params, _ = derive_adjustment(
            "auto_crop", {"tolerance": 120}, _failed(MismatchKind.DIMENSIONS_UNCHANGED), self.analysis
        )
        self.assertEqual(params["tolerance"], 127.5)
        params, _ = derive_adjustment(
            "auto_crop", {"tolerance": 127.5}, _failed(MismatchKind.DIMENSIONS_UNCHANGED), self.analysis
        )
        self.assertIsNone(params)

    def test_auto_crop_honours_configured_step_and_cap(self):
        config = {"retry": {"tolerance_step": 20, "tolerance_widen_max": 100}}
        params, _ = derive_adjustment(
            "auto_crop", {"tolerance": 30}, _failed(MismatchKind.NO_CHANGE), self.analysis, config
        )
        self.assertEqual(params["tolerance"], 81.0)
        params, _ = derive_adjustment(
            "auto_crop", {"tolerance": 240}, _failed(MismatchKind.NO_CHANGE), self.analysis, config
        )
        self.assertEqual(params["tolerance"], 255.0)

    def test_adjustment_does_not_mutate_input(self):
        original = {"colors": [self.red, self.blue], "tolerance": 30}
        derive_adjustment("color_knockout", original, _failed(MismatchKind.OVER_DESTRUCTIVE), self.analysis)
        self.assertEqual(len(original["colors"]), 2)


class SuggestFixTests(unittest.TestCase):
    def setUp(self):
        self.analysis = _analysis()

    def _fix(self, tool, params, analysis=None):
        analysis = analysis or self.analysis
        verdict = parameter_validator.validate(tool, params, analysis)
        self.assertFalse(verdict.is_valid)
        return suggest_fix(tool, params, verdict, analysis)

    def test_out_of_bounds_is_clamped(self):
        fix = self._fix("color_knockout", {"colors": [{"hex": "#ff0000", "r": 255, "g": 0, "b": 0}], "tolerance": 150})
        self.assertEqual(fix["tolerance"], 100)

    def test_bad_enum_falls_back_to_default(self):
        fix = self._fix("upscaler", {"scaleFactor": 2, "model": "hyper"})
        self.assertEqual(fix["model"], "standard")

    def test_missing_color_moves_to_nearest_dominant(self):
        fix = self._fix("color_knockout", {"colors": [{"hex": "#c80050", "r": 200, "g": 0, "b": 80}]})
        self.assertEqual(fix["colors"], [{"hex": "#ff0000", "r": 255, "g": 0, "b": 0}])
        self.assertTrue(parameter_validator.validate("color_knockout", fix, self.analysis).is_valid)

    def test_oversized_upscale_gets_the_largest_allowed_scale(self):
        analysis = _analysis(2000, 2000)
        fix = self._fix("upscaler", {"scaleFactor": 4}, analysis)
        self.assertEqual(fix["scaleFactor"], 2.0)
        self.assertTrue(parameter_validator.validate("upscaler", fix, analysis).is_valid)

    def test_out_of_image_coordinates_are_clamped(self):
        fix = self._fix("pick_color_at_position", {"x": 250, "y": -3})
        self.assertEqual((fix["x"], fix["y"]), (99, 0))

    def test_no_fix_for_unknown_tool(self):
        verdict = parameter_validator.validate("nope", {}, self.analysis)
        self.assertIsNone(suggest_fix("nope", {}, verdict, self.analysis))


if __name__ == "__main__":
    unittest.main()
