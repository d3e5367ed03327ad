import hashlib
import logging

from ..models import CycleState

logger = logging.getLogger(__name__)


def hash_prompt(text: str) -> str:
    """Return the SHA-256 hex digest of a prompt."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class PromptRegistry:
    """Holds the universal prompt and per-turn mini-kernel with their version markers."""

    def __init__(self, prompt_id: str, universal_prompt: str, mini_kernel: str) -> None:
        self._prompt_id = prompt_id
        self._universal_prompt = universal_prompt
        self._mini_kernel = mini_kernel
        self._prompt_hash = hash_prompt(universal_prompt)
        logger.info("Universal prompt loaded: %s (hash: %s)", prompt_id, self.prompt_hash_short)

    @property
    def prompt_id(self) -> str:
        return self._prompt_id

    @property
    def prompt_hash(self) -> str:
        return self._prompt_hash

    @property
    def prompt_hash_short(self) -> str:
        return self._prompt_hash[:12]

    def system_prompt(self, country: str, language: str, currency: str) -> str:
        """Render the universal prompt sent once when a session starts."""
        return _fill_locale(self._universal_prompt, country, language, currency)

    def mini_kernel(
        self,
        country: str,
        language: str,
        currency: str,
        state: CycleState,
        category: str,
    ) -> str:
        """Render the mini-kernel sent with every turn."""
        kernel = _fill_locale(self._mini_kernel, country, language, currency)
        kernel = kernel.replace("{cycle_id}", str(state.cycle_id))
        kernel = kernel.replace("{iteration}", str(state.iteration))
        return kernel.replace("{category}", category)

    def has_drifted(self, state: CycleState) -> bool:
        """True when the state was stamped with a different prompt text."""
        return bool(state.prompt_hash) and state.prompt_hash != self._prompt_hash


def _fill_locale(text: str, country: str, language: str, currency: str) -> str:
    text = text.replace("{fe_location}", country)
    text = text.replace("{fe_language}", language)
    return text.replace("{fe_currency}", currency)
