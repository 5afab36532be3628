"""
Retry Controller: runs proposals through the guard graph.

RetryController.run() guards a single proposal. run_proposals() handles
the multi-call case: proposals marked depends_on_previous are chained and
run serially on the latest accepted image of their chain, while
independent chains run concurrently on a thread pool.
"""

from __future__ import annotations

import concurrent.futures
from typing import List, Optional, Sequence, Union

from ground_truth.image_analyzer import ImageAnalysis, analyze

from .errors import AnalysisError
from .graph import build_guard_graph, recursion_limit
from .history import HistoryStore
from .nodes import Gateway, _cfg
from .scoring import confidence_band
from .session import DEFAULT_GUARD_CONFIG, _deep_merge, create_guard_state
from .state import GuardOutcome, Phase, ToolCallProposal

ProposalLike = Union[ToolCallProposal, dict]


def _as_proposal(proposal: ProposalLike) -> ToolCallProposal:
    if isinstance(proposal, ToolCallProposal):
        return proposal
    return ToolCallProposal.from_dict(proposal)


class RetryController:
    """
    Validate → execute → check → score → (adjust → validate)* for one proposal.

    The gateway and history handle are injected; the compiled graph holds no
    per-run state, so one controller may serve many runs.
    """

    def __init__(self, gateway: Gateway, history: Optional[HistoryStore] = None, config: Optional[dict] = None):
        self.gateway = gateway
        self.history = history
        self.config = _deep_merge(DEFAULT_GUARD_CONFIG, config or {})
        self.graph = build_guard_graph(gateway, history)

    @property
    def max_attempts(self) -> int:
        return int(_cfg({"guard_config": self.config}, "retry", "max_attempts", default=3))

    def run(
        self,
        proposal: ProposalLike,
        image_bytes: bytes,
        analysis: Optional[ImageAnalysis] = None,
    ) -> GuardOutcome:
        """
        Guard one proposal against one image.

        Returns:
            GuardOutcome in a terminal phase. An undecodable image yields a
            FAILED outcome with error_kind "analysis" and no history record.
        """
        proposal = _as_proposal(proposal)
        if analysis is None:
            try:
                analysis = analyze(image_bytes)
            except AnalysisError as e:
                print(f"[Controller] Cannot analyze input image: {e}")
                return GuardOutcome(
                    proposal=proposal,
                    phase=Phase.FAILED,
                    confidence=0.0,
                    band=confidence_band(0.0),
                    reasoning=f"Input image could not be analyzed: {e}",
                    parameters=dict(proposal.parameters) if isinstance(proposal.parameters, dict) else {},
                    error_kind="analysis",
                )

        print(f"[Controller] Guarding {proposal.tool_name} (max {self.max_attempts} attempts)")
        state = create_guard_state(proposal, image_bytes, analysis, self.config)
        final = self.graph.invoke(state, config={"recursion_limit": recursion_limit(self.max_attempts)})
        return final["outcome"]


def build_chains(proposals: Sequence[ToolCallProposal]) -> List[List[int]]:
    """Group proposal indices into chains; a dependent proposal joins its predecessor's chain."""
    chains: List[List[int]] = []
    for idx, proposal in enumerate(proposals):
        if proposal.depends_on_previous and chains:
            chains[-1].append(idx)
        else:
            chains.append([idx])
    return chains


def _run_chain(
    controller: RetryController,
    proposals: Sequence[ToolCallProposal],
    chain: List[int],
    image_bytes: bytes,
) -> List[tuple]:
    current_image = image_bytes
    current_analysis: Optional[ImageAnalysis] = None
    results = []
    for idx in chain:
        outcome = controller.run(proposals[idx], current_image, current_analysis)
        results.append((idx, outcome))
        if outcome.accepted and outcome.result_image and outcome.result_image != current_image:
            current_image = outcome.result_image
            current_analysis = None
        elif outcome.record is not None:
            current_analysis = outcome.record.image_snapshot
    return results


def run_proposals(
    proposals: Sequence[ProposalLike],
    image_bytes: bytes,
    gateway: Gateway,
    history: Optional[HistoryStore] = None,
    config: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> List[GuardOutcome]:
    """
    Guard several proposals from one model turn.

    Args:
        proposals: Tool calls in proposal order.
        image_bytes: Current image.
        gateway: Edit gateway shared by all runs.
        history: Shared HistoryStore handle.
        config: Guard config overrides.
        timeout: Request-level timeout in seconds (default: config
                 concurrency.timeout_s). Raises TimeoutError when exceeded.

    Returns:
        One GuardOutcome per proposal, in proposal order.
    """
    items = [_as_proposal(p) for p in proposals]
    if not items:
        return []
    controller = RetryController(gateway, history, config)
    chains = build_chains(items)
    if timeout is None:
        timeout = _cfg({"guard_config": controller.config}, "concurrency", "timeout_s", default=None)
    max_workers = int(_cfg({"guard_config": controller.config}, "concurrency", "max_workers", default=4))
    print(f"[Controller] {len(items)} proposal(s) in {len(chains)} chain(s)")

    outcomes: List[Optional[GuardOutcome]] = [None] * len(items)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(chains))))
    try:
        futures = [executor.submit(_run_chain, controller, items, chain, image_bytes) for chain in chains]
        done, pending = concurrent.futures.wait(futures, timeout=timeout)
        if pending:
            for future in pending:
                future.cancel()
            raise TimeoutError(f"Guarding {len(items)} proposal(s) exceeded {timeout}s")
        for future in futures:
            for idx, outcome in future.result():
                outcomes[idx] = outcome
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return outcomes  # type: ignore[return-value]
