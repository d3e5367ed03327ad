import sys
from pathlib import Path

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from shopassist.decision.cycle import CycleManager  # noqa: E402
from shopassist.decision.prompts import PromptRegistry  # noqa: E402
from shopassist.models import Session  # noqa: E402


@pytest.fixture
def prompts() -> PromptRegistry:
    """Prompt registry with small fixed texts."""
    return PromptRegistry(
        prompt_id="TestPrompt v1",
        universal_prompt="Shop in {fe_location}, speak {fe_language}, pay in {fe_currency}.",
        mini_kernel="{fe_location}|{fe_language}|{fe_currency}|{cycle_id}|{iteration}|{category}",
    )


@pytest.fixture
def cycles(prompts: PromptRegistry) -> CycleManager:
    return CycleManager(prompts)


@pytest.fixture
def session(cycles: CycleManager) -> Session:
    """Fresh session with an initialised cycle state."""
    return Session(session_id="s1", cycle_state=cycles.initialize_cycle_state())
