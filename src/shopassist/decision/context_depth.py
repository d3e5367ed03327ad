import logging
import re
from datetime import timedelta
from enum import IntEnum
from typing import Callable, List, Optional, Sequence, Tuple

from ..models import Session
from .cycle import MAX_ITERATIONS

logger = logging.getLogger(__name__)


class ContextDepth(IntEnum):
    """How much conversation context is forwarded to the model."""

    MINIMAL = 1  # last message or two and the last product
    MEDIUM = 2  # recent messages, preferences and summary
    FULL = 3  # whole cycle window and full context


CategoryDetector = Callable[[str], str]

SIMPLE_MODIFIERS = (
    # price
    "подешевле", "подороже", "дешевле", "дороже",
    "cheaper", "expensive", "more expensive", "less expensive",
    "більш дешев", "більш дорог", "дешевш", "дорожч",
    "lower price", "higher price",
    # size / storage
    "больше памяти", "меньше памяти", "larger", "smaller",
    "more storage", "less storage", "більше пам'яті", "менше пам'яті",
    # color / variant
    "другой цвет", "другого цвета", "other color", "different color",
    "інший колір", "іншого кольору",
    "другая модель", "другую модель", "other model",
    # quantity
    "больше вариантов", "другие варианты", "more options", "other options",
    "більше варіантів", "інші варіанти",
    # affirmation plus modifier
    "да, но подешевле", "yes, but cheaper", "так, але дешевше",
    "да, другой", "yes, different", "так, інший",
)

SHORT_MESSAGE_MAX_CHARS = 30
SHORT_TOKENS = frozenset(
    {
        "да", "yes", "так", "ок", "ok", "okay",
        "нет", "no", "ні",
        "покажи", "show",
        "это", "this", "це",
        "первый", "второй", "first", "second", "перший", "другий",
    }
)

TOPIC_CHANGE_PHRASES = (
    "а теперь", "а ещё", "also need", "і ще",
    "другое", "something else", "щось інше",
    "вместо этого", "instead", "замість",
)

ELECTRONICS_GROUP = ("smartphones", "laptops", "tablets", "headphones", "smartwatches")

REQUIREMENT_SIGNALS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("price", ("price", "цена", "ціна", "budget", "бюджет", "$", "€", "₴", "uah", "usd")),
    (
        "feature",
        (
            "with", "со", "із", "з",
            "memory", "storage", "память", "пам'ять",
            "screen", "display", "экран", "дисплей",
            "camera", "камера",
            "battery", "батарея", "акумулятор",
        ),
    ),
    ("brand", ("apple", "samsung", "xiaomi", "google", "oneplus", "sony", "lg")),
    ("condition", ("new", "новый", "новий", "warranty", "гарантия", "гарантія")),
)
COMPLEX_SIGNAL_COUNT = 3
LONG_MESSAGE_CHARS = 100
LONG_MESSAGE_COMMAS = 2

CLARIFICATION_KEYWORDS = (
    # questions
    "какой", "какая", "какие", "which", "what", "який", "яка", "які",
    "сколько", "how much", "how many", "скільки",
    "когда", "when", "коли",
    "где", "where", "де",
    # answers to questions
    "например", "for example", "наприклад",
    "я ищу", "i'm looking", "i need", "мне нужен", "мені потрібен",
    "хочу", "want",
    "предпочитаю", "prefer", "віддаю перевагу",
)

_WORD_RE = re.compile(r"[\w']+")


def _words(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def _contains_keyword(text_lower: str, keyword: str) -> bool:
    """Whole-word match for word keywords, plain containment for symbols and phrases."""
    if not re.fullmatch(r"[\w']+", keyword):
        return keyword in text_lower
    return re.search(rf"(?<![\w']){re.escape(keyword)}(?![\w'])", text_lower) is not None


class ContextOptimizer:
    """Picks a context depth for each user message with an ordered rule cascade."""

    def __init__(
        self,
        category_detector: Optional[CategoryDetector] = None,
        max_iterations: int = MAX_ITERATIONS,
        context_stale_seconds: int = 300,
    ) -> None:
        self._detect_category = category_detector
        self._max_iterations = max_iterations
        self._stale_after = timedelta(seconds=context_stale_seconds)
        self._rules: Sequence[Tuple[str, Callable[[str, Session], bool], ContextDepth]] = (
            ("simple_modifier", self.is_simple_modifier, ContextDepth.MINIMAL),
            ("short_question", self.is_short_question, ContextDepth.MINIMAL),
            ("new_category", self.is_new_category, ContextDepth.FULL),
            ("complex_query", self.is_complex_query, ContextDepth.FULL),
            ("clarification", self.is_clarification, ContextDepth.MEDIUM),
        )

    def decide_context_depth(self, user_message: str, session: Session) -> ContextDepth:
        """Return the depth of the first matching rule, MEDIUM otherwise."""
        message = user_message or ""
        for name, predicate, depth in self._rules:
            if predicate(message, session):
                logger.debug("Context depth: %s (%s)", depth.name, name)
                return depth
        logger.debug("Context depth: MEDIUM (default)")
        return ContextDepth.MEDIUM

    def is_simple_modifier(self, message: str, session: Session) -> bool:
        msg_lower = message.lower()
        return any(modifier in msg_lower for modifier in SIMPLE_MODIFIERS)

    def is_short_question(self, message: str, session: Session) -> bool:
        if len(message) > SHORT_MESSAGE_MAX_CHARS:
            return False
        return any(word in SHORT_TOKENS for word in _words(message))

    def is_new_category(self, message: str, session: Session) -> bool:
        current = session.search_state.category
        if not current:
            return True

        detected = self._detect_category(message) if self._detect_category else ""
        if detected and detected != current and not is_related_category(detected, current):
            return True

        msg_lower = message.lower()
        return any(_contains_keyword(msg_lower, kw) for kw in TOPIC_CHANGE_PHRASES)

    def requirement_count(self, message: str) -> int:
        """Number of requirement kinds mentioned; each kind counts once."""
        msg_lower = message.lower()
        return sum(
            1
            for _, keywords in REQUIREMENT_SIGNALS
            if any(_contains_keyword(msg_lower, kw) for kw in keywords)
        )

    def is_complex_query(self, message: str, session: Session) -> bool:
        if self.requirement_count(message) >= COMPLEX_SIGNAL_COUNT:
            return True
        return len(message) > LONG_MESSAGE_CHARS and message.count(",") >= LONG_MESSAGE_COMMAS

    def is_clarification(self, message: str, session: Session) -> bool:
        msg_lower = message.lower()
        return any(_contains_keyword(msg_lower, kw) for kw in CLARIFICATION_KEYWORDS)

    def should_update_context(self, session: Session) -> bool:
        """Whether the stored conversation summary should be refreshed this turn."""
        iteration = session.cycle_state.iteration
        if iteration % 3 == 0:
            return True
        if iteration >= self._max_iterations:
            return True
        ctx = session.conversation_context
        if ctx is not None and session.updated_at - ctx.updated_at > self._stale_after:
            return True
        return False


def is_related_category(first: str, second: str) -> bool:
    """Containment either way, or both inside the electronics group."""
    a, b = first.lower(), second.lower()
    if a in b or b in a:
        return True
    in_group_a = any(cat in a for cat in ELECTRONICS_GROUP)
    in_group_b = any(cat in b for cat in ELECTRONICS_GROUP)
    return in_group_a and in_group_b
