"""
History Store: append-only log of terminal tool executions.

Records are never edited or deleted. Reads work on snapshots taken under
the lock, so concurrent readers never see a partially written record.
Optional persistence appends one JSON line per record.
"""

from __future__ import annotations

import json
import os
import threading
from typing import Dict, Iterable, List, Optional

from ground_truth.image_analyzer import ImageAnalysis

from .state import ExecutionRecord

# Image similarity weights
_W_DIMENSIONS = 0.30
_W_ASPECT = 0.10
_W_TRANSPARENCY = 0.15
_W_COLORS = 0.15
_W_SHARPNESS = 0.15
_W_PRINT = 0.15


def image_similarity(a: ImageAnalysis, b: ImageAnalysis) -> float:
    """Weighted similarity of two analyses, 0-100."""
    dim_diff = 0.0
    if max(a.width, b.width) > 0:
        dim_diff += abs(a.width - b.width) / max(a.width, b.width)
    if max(a.height, b.height) > 0:
        dim_diff += abs(a.height - b.height) / max(a.height, b.height)
    score = max(0.0, 100.0 - dim_diff * 50.0) * _W_DIMENSIONS
    score += (100.0 if a.aspect_ratio == b.aspect_ratio else 50.0) * _W_ASPECT
    score += (100.0 if a.has_transparency == b.has_transparency else 0.0) * _W_TRANSPARENCY
    top = max(a.unique_color_count, b.unique_color_count)
    color_diff = abs(a.unique_color_count - b.unique_color_count) / top if top else 0.0
    score += max(0.0, 100.0 - color_diff * 100.0) * _W_COLORS
    score += max(0.0, 100.0 - abs(a.sharpness - b.sharpness)) * _W_SHARPNESS
    score += (100.0 if a.is_print_ready == b.is_print_ready else 50.0) * _W_PRINT
    return score


class HistoryStore:
    """
    Thread-safe, append-only store of ExecutionRecords.

    Passed explicitly to the validator and the controller; tests can hand
    in an empty or pre-seeded instance.
    """

    def __init__(self, path: Optional[str] = None, records: Optional[Iterable[ExecutionRecord]] = None):
        self._lock = threading.Lock()
        self._records: List[ExecutionRecord] = []
        self.path = path
        if path and os.path.exists(path):
            self._records.extend(self._load(path))
        if records:
            for record in records:
                self.add(record)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, record: ExecutionRecord) -> ExecutionRecord:
        """Append one record (and persist it, if a path is configured)."""
        with self._lock:
            if self.path:
                os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
                    f.flush()
            self._records.append(record)
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> List[ExecutionRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def query(
        self,
        tool_name: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        """Records filtered by tool and success flag, newest first."""
        out = [
            r for r in reversed(self.snapshot())
            if (tool_name is None or r.tool_name == tool_name)
            and (success is None or r.success == success)
        ]
        return out[:limit] if limit is not None else out

    def recent(self, limit: int = 10) -> List[ExecutionRecord]:
        return self.query(limit=limit)

    def find_similar(
        self,
        tool_name: str,
        analysis: ImageAnalysis,
        limit: int = 5,
        min_similarity: float = 0.0,
    ) -> List[ExecutionRecord]:
        """
        Successful runs of `tool_name`, most similar image first.
        Ties keep recency order (newest first).
        """
        candidates = self.query(tool_name=tool_name, success=True)
        scored = [(image_similarity(analysis, r.image_snapshot), idx, r) for idx, r in enumerate(candidates)]
        scored = [item for item in scored if item[0] >= min_similarity]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [r for _, _, r in scored[:limit]]

    def parameter_centroid(
        self,
        tool_name: str,
        names: Iterable[str],
        records: Optional[List[ExecutionRecord]] = None,
    ) -> Dict[str, float]:
        """Mean of each numeric parameter over successful runs (or the given records)."""
        if records is None:
            records = self.query(tool_name=tool_name, success=True)
        centroid: Dict[str, float] = {}
        for name in names:
            values = [
                float(r.parameters[name]) for r in records
                if isinstance(r.parameters.get(name), (int, float))
                and not isinstance(r.parameters.get(name), bool)
            ]
            if values:
                centroid[name] = sum(values) / len(values)
        return centroid

    def stats(self) -> dict:
        records = self.snapshot()
        by_tool: Dict[str, dict] = {}
        for r in records:
            entry = by_tool.setdefault(r.tool_name, {"count": 0, "successes": 0, "confidence_sum": 0.0})
            entry["count"] += 1
            entry["successes"] += int(r.success)
            entry["confidence_sum"] += r.confidence
        tools = {
            name: {
                "count": e["count"],
                "success_rate": e["successes"] / e["count"],
                "avg_confidence": e["confidence_sum"] / e["count"],
            }
            for name, e in sorted(by_tool.items())
        }
        successes = sum(1 for r in records if r.success)
        return {
            "total": len(records),
            "successes": successes,
            "success_rate": successes / len(records) if records else 0.0,
            "tools": tools,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _load(path: str) -> List[ExecutionRecord]:
        records = []
        with open(path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(ExecutionRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    print(f"[HistoryStore] Skipping malformed record at {path}:{line_no}: {e}")
        print(f"[HistoryStore] Loaded {len(records)} records from {path}")
        return records
