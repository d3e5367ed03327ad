"""Bounded conversation cycles.

A session's conversation is split into cycles of at most ``max_iterations``
turns. When a cycle is exhausted its history is summarised into a single
``LastCycleContext`` snapshot and a fresh cycle starts, so the amount of
history forwarded to the model stays constant however long the chat runs.
"""

import json
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ..models import (
    CycleMessage,
    CycleState,
    LastCycleContext,
    ProductInfo,
    Session,
    utcnow,
)
from .prompts import PromptRegistry

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 6
UNKNOWN_CATEGORY = "unknown"

HistoryExtractor = Callable[[Sequence[CycleMessage]], List[str]]


def no_extraction(history: Sequence[CycleMessage]) -> List[str]:
    """Default group/subgroup extractor: nothing is extracted."""
    return []


class CycleManager:
    """Owns the cycle state machine: iteration counting, rollover and rendering."""

    def __init__(
        self,
        prompts: PromptRegistry,
        max_iterations: int = MAX_ITERATIONS,
        group_extractor: HistoryExtractor = no_extraction,
        subgroup_extractor: HistoryExtractor = no_extraction,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {max_iterations}")
        self._prompts = prompts
        self._max_iterations = max_iterations
        self._extract_groups = group_extractor
        self._extract_subgroups = subgroup_extractor
        self._clock = clock

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @property
    def prompts(self) -> PromptRegistry:
        return self._prompts

    def initialize_cycle_state(self) -> CycleState:
        """Return the state for a brand-new session."""
        return CycleState(
            cycle_id=1,
            iteration=1,
            cycle_history=[],
            last_cycle_context=None,
            last_defined=[],
            prompt_id=self._prompts.prompt_id,
            prompt_hash=self._prompts.prompt_hash,
        )

    def add_to_cycle_history(self, state: CycleState, role: str, content: str) -> None:
        state.cycle_history.append(
            CycleMessage(role=role, content=content, timestamp=self._clock())
        )

    def increment_iteration(self, state: CycleState) -> bool:
        """Advance the iteration counter.

        The limit is checked before mutating, so the last iteration is fully
        served. Returns False, leaving the state untouched, when the cycle is
        exhausted and the caller must start a new one.
        """
        if state.iteration >= self._max_iterations:
            logger.info("Max iterations reached (%d), need new cycle", self._max_iterations)
            return False

        state.iteration += 1
        logger.debug(
            "Cycle %d, iteration %d/%d", state.cycle_id, state.iteration, self._max_iterations
        )
        return True

    def start_new_cycle(
        self,
        state: CycleState,
        last_request: str,
        products: Optional[Sequence[ProductInfo]] = None,
    ) -> None:
        """Snapshot the current cycle and reset the window.

        ``last_defined`` is carried over untouched.
        """
        history = list(state.cycle_history)
        state.last_cycle_context = LastCycleContext(
            groups=self._extract_groups(history),
            subgroups=self._extract_subgroups(history),
            products=list(products or []),
            last_request=last_request,
        )
        state.cycle_id += 1
        state.iteration = 1
        state.cycle_history = []
        logger.info("Starting new cycle %d (carried over previous cycle context)", state.cycle_id)

    def advance(
        self,
        session: Session,
        last_request: str,
        products: Optional[Sequence[ProductInfo]] = None,
    ) -> bool:
        """End-of-turn step. Returns True when the turn rolled the cycle over."""
        state = session.cycle_state
        if self.increment_iteration(state):
            return False
        self.start_new_cycle(state, last_request, products)
        return True

    def current_category(self, state: CycleState) -> str:
        """Latest category announced in an assistant JSON reply, or ``unknown``."""
        for msg in reversed(state.cycle_history):
            if msg.role != "assistant":
                continue
            try:
                payload = json.loads(msg.content)
            except (json.JSONDecodeError, TypeError):
                continue
            if isinstance(payload, dict):
                category = payload.get("category")
                if isinstance(category, str) and category:
                    return category
        return UNKNOWN_CATEGORY

    def mini_kernel(self, session: Session) -> str:
        state = session.cycle_state
        return self._prompts.mini_kernel(
            session.country,
            session.language,
            session.currency,
            state,
            self.current_category(state),
        )

    def build_state_context(self, session: Session) -> str:
        """Render the state block sent with each turn.

        Only the last ``max_iterations`` history entries are rendered.
        """
        state = session.cycle_state
        lines: List[str] = [
            "=== CURRENT STATE ===",
            f"CYCLE_ID: {state.cycle_id}",
            f"ITERATION: {state.iteration}/{self._max_iterations}",
            f"CURRENT_CATEGORY: {self.current_category(state)}",
            "",
            "=== CYCLE_HISTORY (Current Cycle) ===",
        ]

        history = state.cycle_history
        if not history:
            lines.append("(empty - first message in cycle)")
        else:
            start = max(0, len(history) - self._max_iterations)
            if start > 0:
                lines.append(f"(showing last {len(history) - start} of {len(history)} messages)")
            for i in range(start, len(history)):
                msg = history[i]
                lines.append(f"{i + 1}. {msg.role}: {msg.content}")
        lines.append("")

        last_ctx = state.last_cycle_context
        if last_ctx is not None:
            lines.append("=== LAST_CYCLE_CONTEXT ===")
            if last_ctx.groups:
                lines.append(f"Groups: {', '.join(last_ctx.groups)}")
            if last_ctx.subgroups:
                lines.append(f"Subgroups: {', '.join(last_ctx.subgroups)}")
            if last_ctx.products:
                lines.append("Products from last cycle:")
                for p in last_ctx.products:
                    lines.append(f"  - {p.name} ({p.price:.2f})")
            if last_ctx.last_request:
                lines.append(f"Last request: {last_ctx.last_request}")
            lines.append("")

        if state.last_defined:
            lines.append("=== LAST_DEFINED (confirmed products) ===")
            lines.append(", ".join(state.last_defined))
            lines.append("")

        return "\n".join(lines) + "\n"
