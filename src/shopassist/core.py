import logging
from dataclasses import dataclass, field

from .decision import (
    ContextOptimizer,
    CycleManager,
    GroundingDecision,
    GroundingStats,
    GroundingStrategy,
    PromptRegistry,
    RelevanceEngine,
)
from .models import Session
from .services.key_rotator import KeyRotator
from .services.redis import RedisCrudService
from .services.usage_stats import TokenStats
from .settings import Settings, split_keys

logger = logging.getLogger(__name__)


@dataclass
class DecisionCore:
    """Process-wide components shared by every chat turn."""

    prompts: PromptRegistry
    cycles: CycleManager
    optimizer: ContextOptimizer
    grounding: GroundingStrategy
    relevance: RelevanceEngine
    token_stats: TokenStats
    rotators: dict[str, KeyRotator] = field(default_factory=dict)

    def decide_grounding(self, session: Session, user_message: str) -> GroundingDecision:
        """Grounding decision for a turn, judged against the current cycle's history."""
        return self.grounding.decide(user_message, session.cycle_state.history_as_dicts())


def build_core(settings: Settings, redis_crud: RedisCrudService | None = None) -> DecisionCore:
    """Wire the decision core from settings.

    Invalid configuration (unknown grounding mode, bad iteration limit) raises
    here rather than on the first chat turn. Services without configured keys
    get no rotator.
    """
    prompts = PromptRegistry(
        prompt_id=settings.prompt_id,
        universal_prompt=settings.universal_prompt,
        mini_kernel=settings.mini_kernel,
    )
    rotators: dict[str, KeyRotator] = {}
    for service, raw_keys in (("gemini", settings.gemini_api_keys), ("serp", settings.serp_api_keys)):
        keys = split_keys(raw_keys)
        if not keys:
            logger.warning("No API keys configured for %s", service)
            continue
        rotators[service] = KeyRotator(service, keys, redis_crud)
        logger.info("Key rotator for %s ready with %d keys", service, len(keys))

    return DecisionCore(
        prompts=prompts,
        cycles=CycleManager(prompts, max_iterations=settings.max_iterations),
        optimizer=ContextOptimizer(
            max_iterations=settings.max_iterations,
            context_stale_seconds=settings.context_stale_seconds,
        ),
        grounding=GroundingStrategy(
            mode=settings.grounding_mode,
            stats=GroundingStats(),
            enabled=settings.grounding_enabled,
        ),
        relevance=RelevanceEngine(settings.search_policies()),
        token_stats=TokenStats(),
        rotators=rotators,
    )
