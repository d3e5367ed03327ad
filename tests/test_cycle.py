import json
from datetime import datetime, timezone

import pytest

from shopassist.decision.cycle import MAX_ITERATIONS, CycleManager
from shopassist.decision.prompts import PromptRegistry, hash_prompt
from shopassist.models import ProductInfo, Session


def test_initialize_cycle_state(cycles: CycleManager, prompts: PromptRegistry) -> None:
    """A new state starts at cycle 1, iteration 1, empty, stamped with the prompt version."""
    state = cycles.initialize_cycle_state()
    assert state.cycle_id == 1
    assert state.iteration == 1
    assert state.cycle_history == []
    assert state.last_defined == []
    assert state.last_cycle_context is None
    assert state.prompt_id == "TestPrompt v1"
    assert state.prompt_hash == prompts.prompt_hash
    assert len(state.prompt_hash) == 64


def test_add_to_cycle_history_does_not_touch_counters(cycles: CycleManager) -> None:
    """Appending history leaves iteration and cycle_id alone."""
    ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
    manager = CycleManager(cycles.prompts, clock=lambda: ts)
    state = manager.initialize_cycle_state()
    manager.add_to_cycle_history(state, "user", "hello")
    manager.add_to_cycle_history(state, "assistant", "hi")
    assert [(m.role, m.content) for m in state.cycle_history] == [
        ("user", "hello"),
        ("assistant", "hi"),
    ]
    assert state.cycle_history[0].timestamp == ts
    assert state.iteration == 1
    assert state.cycle_id == 1


def test_increment_iteration_until_limit(cycles: CycleManager) -> None:
    """Iteration climbs to MAX and the call at MAX returns False without mutating."""
    state = cycles.initialize_cycle_state()
    for expected in range(2, MAX_ITERATIONS + 1):
        assert cycles.increment_iteration(state) is True
        assert state.iteration == expected

    assert state.iteration == MAX_ITERATIONS
    assert cycles.increment_iteration(state) is False
    assert state.iteration == MAX_ITERATIONS
    assert cycles.increment_iteration(state) is False
    assert state.iteration == MAX_ITERATIONS
    assert state.cycle_id == 1


def test_start_new_cycle_resets_window_and_keeps_last_defined(cycles: CycleManager) -> None:
    """Rollover bumps cycle_id, resets iteration, clears history, keeps last_defined."""
    state = cycles.initialize_cycle_state()
    state.iteration = MAX_ITERATIONS
    state.last_defined = ["iPhone 15 Pro"]
    cycles.add_to_cycle_history(state, "user", "iphone 15 pro")
    cycles.add_to_cycle_history(state, "assistant", "Which color?")

    products = [ProductInfo(name="iPhone 15 Pro 128GB", price=999.0)]
    cycles.start_new_cycle(state, "iphone 15 pro black", products)

    assert state.cycle_id == 2
    assert state.iteration == 1
    assert state.cycle_history == []
    assert state.last_defined == ["iPhone 15 Pro"]
    ctx = state.last_cycle_context
    assert ctx is not None
    assert ctx.last_request == "iphone 15 pro black"
    assert ctx.products == products
    assert ctx.groups == []
    assert ctx.subgroups == []


def test_start_new_cycle_keeps_only_latest_snapshot(cycles: CycleManager) -> None:
    """Only the immediately previous cycle is retained."""
    state = cycles.initialize_cycle_state()
    cycles.start_new_cycle(state, "first", [])
    cycles.start_new_cycle(state, "second", [])
    assert state.cycle_id == 3
    assert state.last_cycle_context.last_request == "second"


def test_start_new_cycle_uses_extractors(prompts: PromptRegistry) -> None:
    """Group and subgroup extraction is pluggable and sees the outgoing history."""
    seen = []

    def groups(history):
        seen.extend(m.content for m in history)
        return ["electronics"]

    manager = CycleManager(prompts, group_extractor=groups, subgroup_extractor=lambda h: ["phones"])
    state = manager.initialize_cycle_state()
    manager.add_to_cycle_history(state, "user", "a phone")
    manager.start_new_cycle(state, "a phone", None)
    assert seen == ["a phone"]
    assert state.last_cycle_context.groups == ["electronics"]
    assert state.last_cycle_context.subgroups == ["phones"]
    assert state.last_cycle_context.products == []


def test_advance_rolls_over_after_last_iteration(cycles: CycleManager, session: Session) -> None:
    """advance() serves all iterations and rolls over on the turn after the last."""
    rollovers = [cycles.advance(session, f"turn {i}") for i in range(MAX_ITERATIONS)]
    assert rollovers == [False] * (MAX_ITERATIONS - 1) + [True]
    assert session.cycle_state.cycle_id == 2
    assert session.cycle_state.iteration == 1
    assert session.cycle_state.last_cycle_context.last_request == f"turn {MAX_ITERATIONS - 1}"


def test_build_state_context_empty(cycles: CycleManager, session: Session) -> None:
    text = cycles.build_state_context(session)
    assert "CYCLE_ID: 1" in text
    assert f"ITERATION: 1/{MAX_ITERATIONS}" in text
    assert "CURRENT_CATEGORY: unknown" in text
    assert "(empty - first message in cycle)" in text
    assert "LAST_CYCLE_CONTEXT" not in text
    assert "LAST_DEFINED" not in text


def test_build_state_context_bounds_history(cycles: CycleManager, session: Session) -> None:
    """Never more than MAX_ITERATIONS history lines, with a truncation note."""
    state = session.cycle_state
    for i in range(20):
        cycles.add_to_cycle_history(state, "user" if i % 2 == 0 else "assistant", f"msg-{i}")

    text = cycles.build_state_context(session)
    rendered = [line for line in text.splitlines() if ": msg-" in line]
    assert len(rendered) == MAX_ITERATIONS
    assert rendered[0] == "15. user: msg-14"
    assert rendered[-1] == "20. assistant: msg-19"
    assert "msg-13" not in text
    assert f"(showing last {MAX_ITERATIONS} of 20 messages)" in text


def test_build_state_context_carryover_sections(cycles: CycleManager, session: Session) -> None:
    state = session.cycle_state
    state.last_defined = ["Galaxy S24", "Pixel 8"]
    cycles.start_new_cycle(state, "cheap android", [ProductInfo("Galaxy S24", 799.5)])

    text = cycles.build_state_context(session)
    assert "=== LAST_CYCLE_CONTEXT ===" in text
    assert "  - Galaxy S24 (799.50)" in text
    assert "Last request: cheap android" in text
    assert "=== LAST_DEFINED (confirmed products) ===" in text
    assert "Galaxy S24, Pixel 8" in text
    assert "CYCLE_ID: 2" in text


def test_current_category_from_latest_assistant_json(cycles: CycleManager, session: Session) -> None:
    state = session.cycle_state
    cycles.add_to_cycle_history(state, "assistant", json.dumps({"category": "laptops"}))
    cycles.add_to_cycle_history(state, "user", json.dumps({"category": "ignored"}))
    cycles.add_to_cycle_history(state, "assistant", "plain text reply")
    assert cycles.current_category(state) == "laptops"

    cycles.add_to_cycle_history(state, "assistant", json.dumps({"category": "smartphones"}))
    assert cycles.current_category(state) == "smartphones"


def test_mini_kernel_substitutes_placeholders(cycles: CycleManager, session: Session) -> None:
    session.country, session.language, session.currency = "UA", "uk", "UAH"
    session.cycle_state.iteration = 3
    assert cycles.mini_kernel(session) == "UA|uk|UAH|1|3|unknown"


def test_prompt_registry_hash_and_drift(prompts: PromptRegistry, cycles: CycleManager) -> None:
    """The hash tracks the universal prompt text and detects stale states."""
    assert prompts.prompt_hash == hash_prompt(
        "Shop in {fe_location}, speak {fe_language}, pay in {fe_currency}."
    )
    assert prompts.prompt_hash_short == prompts.prompt_hash[:12]
    assert prompts.system_prompt("CH", "de", "CHF") == "Shop in CH, speak de, pay in CHF."

    state = cycles.initialize_cycle_state()
    assert prompts.has_drifted(state) is False
    state.prompt_hash = "0" * 64
    assert prompts.has_drifted(state) is True


def test_invalid_max_iterations(prompts: PromptRegistry) -> None:
    with pytest.raises(ValueError):
        CycleManager(prompts, max_iterations=0)
