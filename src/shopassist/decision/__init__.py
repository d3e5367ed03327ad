"""Decision core of the shopping assistant.

Pure, synchronous classifiers and state transitions used by the chat
orchestrator on every turn: context depth, grounding, relevance filtering and
the bounded conversation cycle.
"""

from .context_depth import ContextDepth, ContextOptimizer
from .cycle import MAX_ITERATIONS, CycleManager
from .grounding import GroundingDecision, GroundingReason, GroundingStats, GroundingStrategy
from .prompts import PromptRegistry
from .relevance import RelevanceEngine, RelevanceResult, ScoredCandidate, ShoppingItem
from .replies import AssistantReply, parse_assistant_reply

__all__ = [
    "AssistantReply",
    "ContextDepth",
    "ContextOptimizer",
    "CycleManager",
    "GroundingDecision",
    "GroundingReason",
    "GroundingStats",
    "GroundingStrategy",
    "MAX_ITERATIONS",
    "PromptRegistry",
    "RelevanceEngine",
    "RelevanceResult",
    "ScoredCandidate",
    "ShoppingItem",
    "parse_assistant_reply",
]
