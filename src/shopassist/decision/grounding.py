"""Decide whether a model reply should be grounded with live web search.

Grounding costs money and latency, so it is only requested when the user is
asking about concrete products, availability or recency. The decision is an
ordered rule cascade: the first rule that matches fixes both the reason and
the confidence.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class GroundingReason(str, Enum):
    BRAND_SELECTION_LATEST_MODELS = "brand_selection_latest_models"
    SPECIFIC_PRODUCT_VERIFICATION = "specific_product_verification"
    VERIFICATION_INTENT = "verification_intent"
    RECENCY_INTENT = "recency_intent"
    SIMPLE_DIALOGUE = "simple_dialogue"
    ADVANCED_DIALOGUE_STAGE = "advanced_dialogue_stage"
    TECHNICAL_SPECS = "technical_specs"
    GENERAL_QUERY = "general_query"
    GROUNDING_DISABLED = "grounding_disabled"


@dataclass(frozen=True)
class GroundingDecision:
    should_ground: bool
    reason: GroundingReason
    confidence: float


@dataclass(frozen=True)
class ModeProfile:
    min_words_for_product: int
    enable_technical_spec: bool
    advanced_dialogue_min_messages: int


MODE_PROFILES: Dict[str, ModeProfile] = {
    "conservative": ModeProfile(3, False, 6),
    "balanced": ModeProfile(2, True, 4),
    "aggressive": ModeProfile(1, True, 3),
}

MAJOR_BRANDS = frozenset(
    {
        "apple", "iphone", "ipad", "macbook", "airpods",
        "samsung", "galaxy", "google", "pixel", "xiaomi", "redmi",
        "oneplus", "sony", "playstation", "lg", "huawei", "honor",
        "oppo", "realme", "vivo", "nokia", "motorola",
        "dell", "hp", "lenovo", "thinkpad", "asus", "acer", "msi",
        "microsoft", "surface", "nintendo", "dyson", "bose", "jbl",
        "canon", "nikon", "garmin",
    }
)

_BRAND_QUESTION_RE = re.compile(
    r"\b(which|what)\b[^?]*\b(brand|model|manufacturer|iphone|galaxy|pixel)\b"
    r"|какой бренд|какую модель|какая модель|который бренд"
    r"|який бренд|яку модель|яка модель"
)

_SPECIFIC_MODEL_RES = tuple(
    re.compile(p)
    for p in (
        r"\biphone\s?\d{1,2}\b",
        r"\bgalaxy\s?[szamn]\d{1,3}\b",
        r"\bgalaxy\s(fold|flip|tab|watch|buds)\s?\d?",
        r"\bpixel\s?\d{1,2}[a]?\b",
        r"\bmacbook\s(air|pro)\b",
        r"\bipad\s(air|pro|mini)\b",
        r"\bairpods\s(pro|max)\b",
        r"\bapple\swatch\b",
        r"\bxps\s?\d{2}\b",
        r"\bthinkpad\s?[a-z]\d{1,2}\b",
        r"\b(playstation|ps)\s?[45]\b",
        r"\brtx\s?\d{4}\b",
        r"\bredmi\snote\s?\d{1,2}\b",
    )
)

MODEL_SUFFIXES = frozenset({"pro", "ultra", "plus", "max", "mini", "lite", "fe", "slim"})
MAX_WORDS_FOR_PRODUCT = 10

VERIFICATION_PHRASES = (
    "is there", "are there", "already out", "in stock", "available",
    "released yet", "has it come out", "does it exist", "still sold",
    "есть ли", "уже вышел", "в наличии", "вышел ли", "существует ли",
    "чи є", "вже вийшов", "в наявності", "чи вийшов",
)

RECENCY_WORDS = frozenset(
    {
        "new", "newest", "latest", "current", "recent",
        "новый", "новая", "новые", "новейший", "последний", "последняя", "актуальный",
        "новий", "нова", "нові", "останній", "остання", "найновіший",
    }
)

GREETINGS = frozenset(
    {
        "hi", "hello", "hey", "good morning", "good evening", "thanks", "thank you",
        "привет", "здравствуйте", "добрый день", "спасибо",
        "привіт", "вітаю", "добрий день", "дякую",
    }
)
SHORT_ANSWERS = frozenset({"yes", "no", "ok", "okay", "sure", "да", "нет", "ок", "так", "ні"})
SHORT_ANSWER_MAX_WORDS = 2
GENERIC_REQUEST_PHRASES = (
    "looking for", "i need", "need a", "i want", "want a",
    "ищу", "нужен", "нужна", "хочу", "шукаю", "потрібен", "потрібна",
)
GENERIC_REQUEST_MAX_WORDS = 6
ADVANCED_LOOKBACK_MESSAGES = 4

TECH_SPEC_KEYWORDS = (
    "specs", "specifications", "specification", "processor", "cpu", "gpu", "chip",
    "ram", "memory", "storage", "battery", "mah", "display", "resolution",
    "refresh rate", "camera", "megapixel", "benchmark",
    "характеристики", "процессор", "батарея", "камера",
    "процесор", "акумулятор",
)

_TOKEN_RE = re.compile(r"[\w'-]+")


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def _has_phrase(text_lower: str, phrase: str) -> bool:
    return re.search(rf"(?<![\w']){re.escape(phrase)}(?![\w'])", text_lower) is not None


class GroundingStats:
    """Process-wide grounding decision counters. Safe to share across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_decisions = 0
        self.grounding_enabled = 0
        self.grounding_disabled = 0
        self.reason_counts: Dict[str, int] = {}
        self.average_confidence = 0.0

    def record_decision(self, decision: GroundingDecision) -> None:
        with self._lock:
            self.total_decisions += 1
            if decision.should_ground:
                self.grounding_enabled += 1
            else:
                self.grounding_disabled += 1
            reason = decision.reason.value
            self.reason_counts[reason] = self.reason_counts.get(reason, 0) + 1
            n = self.total_decisions
            self.average_confidence = (
                self.average_confidence * (n - 1) + decision.confidence
            ) / n

    def snapshot(self) -> Dict[str, object]:
        """Consistent copy of the counters for reporting."""
        with self._lock:
            percentage = (
                self.grounding_enabled / self.total_decisions * 100
                if self.total_decisions
                else 0.0
            )
            return {
                "total_decisions": self.total_decisions,
                "grounding_enabled": self.grounding_enabled,
                "grounding_disabled": self.grounding_disabled,
                "grounding_percentage": round(percentage, 1),
                "reason_breakdown": dict(self.reason_counts),
                "average_confidence": round(self.average_confidence, 4),
            }


History = Sequence[Mapping[str, str]]
Rule = Tuple[str, Callable[[str, History], Optional[GroundingDecision]]]


@dataclass
class GroundingStrategy:
    """Rule-based grounding classifier configured by a mode."""

    mode: str = "balanced"
    stats: GroundingStats = field(default_factory=GroundingStats)
    enabled: bool = True
    clock: Callable[[], datetime] = datetime.now

    def __post_init__(self) -> None:
        if self.mode not in MODE_PROFILES:
            raise ValueError(
                f"Invalid grounding mode {self.mode!r}; expected one of {sorted(MODE_PROFILES)}"
            )
        self.profile = MODE_PROFILES[self.mode]
        self._rules: Sequence[Rule] = (
            ("brand_selection", self._brand_selection),
            ("specific_product", self._specific_product),
            ("verification", self._verification),
            ("recency", self._recency),
            ("simple_dialogue", self._simple_dialogue),
            ("advanced_dialogue", self._advanced_dialogue),
            ("technical_specs", self._technical_specs),
        )

    def decide(
        self,
        user_message: str,
        recent_history: Optional[History] = None,
    ) -> GroundingDecision:
        """Classify one message and record the outcome in ``stats``."""
        decision = self._classify(user_message or "", list(recent_history or []))
        self.stats.record_decision(decision)
        logger.debug(
            "Grounding decision: ground=%s reason=%s confidence=%.2f",
            decision.should_ground,
            decision.reason.value,
            decision.confidence,
        )
        return decision

    def _classify(
        self, message: str, history: History
    ) -> GroundingDecision:
        if not self.enabled:
            return GroundingDecision(False, GroundingReason.GROUNDING_DISABLED, 1.0)
        for _, rule in self._rules:
            decision = rule(message, history)
            if decision is not None:
                return decision
        return GroundingDecision(False, GroundingReason.GENERAL_QUERY, 0.75)

    # Predicates

    def mentions_brand(self, message: str) -> bool:
        return any(token in MAJOR_BRANDS for token in _tokens(message))

    def is_specific_model(self, message: str) -> bool:
        msg_lower = message.lower()
        if any(pattern.search(msg_lower) for pattern in _SPECIFIC_MODEL_RES):
            return True

        words = msg_lower.split()
        tokens = _tokens(msg_lower)
        has_digit = any(any(ch.isdigit() for ch in tok) for tok in tokens)
        if (
            has_digit
            and self.profile.min_words_for_product <= len(words) <= MAX_WORDS_FOR_PRODUCT
            and self.mentions_brand(msg_lower)
        ):
            return True

        return len(words) >= 2 and any(tok in MODEL_SUFFIXES for tok in tokens)

    def is_verification(self, message: str) -> bool:
        msg_lower = message.lower()
        return any(_has_phrase(msg_lower, phrase) for phrase in VERIFICATION_PHRASES)

    def is_recency(self, message: str) -> bool:
        tokens = _tokens(message)
        if any(tok in RECENCY_WORDS for tok in tokens):
            return True
        year = self.clock().year
        return str(year) in tokens or str(year + 1) in tokens

    def is_simple_dialogue(self, message: str) -> bool:
        normalized = " ".join(_tokens(message))
        if normalized in GREETINGS:
            return True

        tokens = normalized.split()
        if 0 < len(tokens) <= SHORT_ANSWER_MAX_WORDS and any(t in SHORT_ANSWERS for t in tokens):
            return True

        if len(tokens) <= GENERIC_REQUEST_MAX_WORDS and any(
            _has_phrase(normalized, phrase) for phrase in GENERIC_REQUEST_PHRASES
        ):
            return not self.is_specific_model(message)
        return False

    def is_technical(self, message: str) -> bool:
        msg_lower = message.lower()
        return any(_has_phrase(msg_lower, kw) for kw in TECH_SPEC_KEYWORDS)

    # Rules

    def _brand_selection(self, message: str, history: History) -> Optional[GroundingDecision]:
        if not self.mentions_brand(message):
            return None
        last_assistant = _last_assistant_message(history)
        if last_assistant and _BRAND_QUESTION_RE.search(last_assistant.lower()):
            return GroundingDecision(True, GroundingReason.BRAND_SELECTION_LATEST_MODELS, 0.98)
        return None

    def _specific_product(self, message: str, history: History) -> Optional[GroundingDecision]:
        if self.is_specific_model(message):
            return GroundingDecision(True, GroundingReason.SPECIFIC_PRODUCT_VERIFICATION, 0.95)
        return None

    def _verification(self, message: str, history: History) -> Optional[GroundingDecision]:
        if self.is_verification(message):
            return GroundingDecision(True, GroundingReason.VERIFICATION_INTENT, 0.9)
        return None

    def _recency(self, message: str, history: History) -> Optional[GroundingDecision]:
        if self.is_recency(message):
            return GroundingDecision(True, GroundingReason.RECENCY_INTENT, 0.85)
        return None

    def _simple_dialogue(self, message: str, history: History) -> Optional[GroundingDecision]:
        if self.is_simple_dialogue(message):
            return GroundingDecision(False, GroundingReason.SIMPLE_DIALOGUE, 0.95)
        return None

    def _advanced_dialogue(self, message: str, history: History) -> Optional[GroundingDecision]:
        if len(history) < self.profile.advanced_dialogue_min_messages:
            return None
        recent = history[-ADVANCED_LOOKBACK_MESSAGES:]
        if any(self.is_specific_model(m.get("content", "")) for m in recent):
            return GroundingDecision(True, GroundingReason.ADVANCED_DIALOGUE_STAGE, 0.7)
        return None

    def _technical_specs(self, message: str, history: History) -> Optional[GroundingDecision]:
        if self.profile.enable_technical_spec and self.is_technical(message):
            return GroundingDecision(True, GroundingReason.TECHNICAL_SPECS, 0.6)
        return None


def _last_assistant_message(history: History) -> str:
    for msg in reversed(history):
        if msg.get("role") == "assistant":
            return msg.get("content", "")
    return ""
