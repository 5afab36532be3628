"""
Command-line entry points for the guardrail.

Usage:
    python -m guardrail.cli analyze path/to/image.png
    python -m guardrail.cli validate image.png --tool color_knockout --params '{"colors": [...]}'
    python -m guardrail.cli compare before.png after.png --tool upscaler --params '{"scaleFactor": 2}'
    python -m guardrail.cli batch manifest.jsonl --output verdicts.jsonl
"""

from __future__ import annotations

import argparse
import json
import os
import sys

from tqdm import tqdm

from ground_truth.image_analyzer import analyze, format_analysis_summary
from tool_checks import parameter_validator, result_validator
from tool_checks.registry import known_tools

from .errors import AnalysisError
from .history import HistoryStore
from .scoring import confidence_band, is_acceptable, score
from .session import create_history, load_guard_config


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _parse_params(raw: str) -> dict:
    try:
        params = json.loads(raw) if raw else {}
    except json.JSONDecodeError as e:
        raise SystemExit(f"--params is not valid JSON: {e}")
    if not isinstance(params, dict):
        raise SystemExit("--params must be a JSON object")
    return params


def _load_history(args) -> HistoryStore:
    config = load_guard_config(args.config) if os.path.exists(args.config) else load_guard_config(None)
    if args.history:
        config["history"]["path"] = args.history
    return create_history(config)


def cmd_analyze(args) -> int:
    analysis = analyze(_read_bytes(args.image))
    if args.json:
        print(json.dumps(analysis.to_dict(), indent=2))
    else:
        print(format_analysis_summary(analysis))
    return 0


def cmd_validate(args) -> int:
    analysis = analyze(_read_bytes(args.image))
    history = _load_history(args)
    verdict = parameter_validator.validate(args.tool, _parse_params(args.params), analysis, history)
    if args.json:
        print(json.dumps(verdict.to_dict(), indent=2))
    else:
        print(f"Valid: {verdict.is_valid}  Confidence: {verdict.confidence:.0f} ({confidence_band(verdict.confidence)})")
        for err in verdict.errors:
            print(f"  ERROR: {err}")
        for warn in verdict.warnings:
            print(f"  WARN:  {warn}")
        if verdict.adjusted_parameters:
            print(f"  Suggested parameters: {json.dumps(verdict.adjusted_parameters)}")
        print(verdict.reasoning)
    return 0 if verdict.is_valid else 1


def cmd_compare(args) -> int:
    result = result_validator.validate(
        args.tool,
        _read_bytes(args.before),
        _read_bytes(args.after),
        parameters=_parse_params(args.params),
    )
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result_validator.format_result_summary(result))
    return 0 if result.success else 1


def _judge_entry(entry: dict, base_dir: str, history: HistoryStore) -> dict:
    """Validate one manifest entry offline (no gateway): gate 1, plus gate 2 when 'after' is given."""
    tool = entry.get("tool_name") or entry.get("toolName", "")
    params = entry.get("parameters") or {}
    before = _read_bytes(os.path.join(base_dir, entry["before"]))
    verdict = {"tool_name": tool, "before": entry["before"]}
    try:
        analysis = analyze(before)
    except AnalysisError as e:
        verdict.update({"phase": "failed", "reasoning": str(e)})
        return verdict

    validation = parameter_validator.validate(tool, params, analysis, history)
    verdict.update({"valid": validation.is_valid, "errors": validation.errors, "warnings": validation.warnings})
    if not validation.is_valid:
        verdict.update({"phase": "rejected", "confidence": validation.confidence})
        return verdict
    if not entry.get("after"):
        verdict.update({"phase": "validated", "confidence": validation.confidence})
        return verdict

    after = _read_bytes(os.path.join(base_dir, entry["after"]))
    result = result_validator.validate(tool, before, after, parameters=params, before_analysis=analysis)
    confidence = score(validation, result)
    verdict.update({
        "phase": "accepted" if is_acceptable(confidence, result) else "needs_retry",
        "confidence": confidence,
        "band": confidence_band(confidence),
        "percentage_changed": result.percentage_changed,
        "result_reasoning": result.reasoning,
    })
    return verdict


def cmd_batch(args) -> int:
    history = _load_history(args)
    base_dir = os.path.dirname(os.path.abspath(args.manifest))
    with open(args.manifest, "r", encoding="utf-8") as f:
        entries = [json.loads(line) for line in f if line.strip()]

    verdicts = []
    for entry in tqdm(entries, desc="Guarding"):
        verdicts.append(_judge_entry(entry, base_dir, history))

    out = open(args.output, "w", encoding="utf-8") if args.output else sys.stdout
    try:
        for verdict in verdicts:
            out.write(json.dumps(verdict) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()

    tally = {}
    for verdict in verdicts:
        tally[verdict.get("phase", "unknown")] = tally.get(verdict.get("phase", "unknown"), 0) + 1
    print(f"[Batch] {len(verdicts)} entries: " + ", ".join(f"{k}={v}" for k, v in sorted(tally.items())), file=sys.stderr)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Image tool-call guardrail")
    parser.add_argument("--config", default="configs/guard_config.yaml", help="Guard config path")
    parser.add_argument("--history", default=None, help="History JSON-lines path (overrides config)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("analyze", help="Print ground-truth measurements of an image")
    p.add_argument("image")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("validate", help="Validate proposed tool parameters against an image")
    p.add_argument("image")
    p.add_argument("--tool", required=True, choices=known_tools())
    p.add_argument("--params", default="{}", help="Parameters as a JSON object")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("compare", help="Validate an edit result against its input")
    p.add_argument("before")
    p.add_argument("after")
    p.add_argument("--tool", required=True, choices=known_tools())
    p.add_argument("--params", default="{}", help="Parameters the tool ran with")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_compare)

    p = sub.add_parser("batch", help="Judge a JSON-lines manifest of proposals/results")
    p.add_argument("manifest")
    p.add_argument("--output", default=None, help="Write verdicts here (default: stdout)")
    p.set_defaults(func=cmd_batch)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except AnalysisError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
