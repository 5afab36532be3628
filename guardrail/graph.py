"""
StateGraph construction for the guardrail.

Builds the LangGraph graph:
  START → validate → execute → check_result → score → finalize → END
with conditional routing: validate/execute may short-circuit to finalize,
and score loops back through adjust → validate while retries remain.
"""

from __future__ import annotations

from langgraph.graph import StateGraph, START, END

from .state import GuardState
from .nodes import (
    Gateway,
    build_nodes,
    route_after_execute,
    route_after_score,
    route_after_validate,
)

# Graph steps per attempt: validate, execute, check_result, score, adjust.
STEPS_PER_ATTEMPT = 5


def recursion_limit(max_attempts: int) -> int:
    """LangGraph recursion limit that fits max_attempts full passes plus finalize."""
    return max(1, int(max_attempts)) * STEPS_PER_ATTEMPT + 5


def build_guard_graph(gateway: Gateway, history=None, checkpointer=None):
    """
    Build and compile the guard StateGraph.

    Args:
        gateway: Callable (tool_name, parameters, image_bytes) -> image bytes.
                 Raises ExecutionError on genuine failure.
        history: Shared HistoryStore handle (optional).
        checkpointer: Optional LangGraph checkpointer. The state carries raw
                      image bytes, so none is used by default.

    Returns:
        Compiled LangGraph graph ready for invoke/stream.
    """
    nodes = build_nodes(gateway, history)
    builder = StateGraph(GuardState)

    # Add nodes
    for name, fn in nodes.items():
        builder.add_node(name, fn)

    # Edges
    builder.add_edge(START, "validate")

    builder.add_conditional_edges(
        "validate",
        route_after_validate,
        {
            "execute": "execute",
            "finalize": "finalize",
        },
    )

    builder.add_conditional_edges(
        "execute",
        route_after_execute,
        {
            "check_result": "check_result",
            "finalize": "finalize",
        },
    )

    builder.add_edge("check_result", "score")

    builder.add_conditional_edges(
        "score",
        route_after_score,
        {
            "adjust": "adjust",
            "finalize": "finalize",
        },
    )

    builder.add_edge("adjust", "validate")
    builder.add_edge("finalize", END)

    if checkpointer is None:
        return builder.compile()
    return builder.compile(checkpointer=checkpointer)
