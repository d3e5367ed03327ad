from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    """Parse an ISO timestamp from stored JSON; fall back to now."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return utcnow()


@dataclass
class ProductInfo:
    """A product name and price carried between cycles."""

    name: str
    price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "price": self.price}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductInfo":
        return cls(name=str(data.get("name", "")), price=float(data.get("price") or 0.0))


@dataclass
class CycleMessage:
    """A single message inside the current cycle."""

    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CycleMessage":
        return cls(
            role=str(data.get("role", "")),
            content=str(data.get("content", "")),
            timestamp=_parse_ts(data.get("timestamp")),
        )


@dataclass
class LastCycleContext:
    """Snapshot of the previous cycle. Only the latest one is kept."""

    groups: List[str] = field(default_factory=list)
    subgroups: List[str] = field(default_factory=list)
    products: List[ProductInfo] = field(default_factory=list)
    last_request: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groups": list(self.groups),
            "subgroups": list(self.subgroups),
            "products": [p.to_dict() for p in self.products],
            "last_request": self.last_request,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastCycleContext":
        return cls(
            groups=list(data.get("groups") or []),
            subgroups=list(data.get("subgroups") or []),
            products=[ProductInfo.from_dict(p) for p in data.get("products") or []],
            last_request=str(data.get("last_request", "")),
        )


@dataclass
class CycleState:
    """Bounded conversation window state for one session."""

    cycle_id: int = 1
    iteration: int = 1
    cycle_history: List[CycleMessage] = field(default_factory=list)
    last_cycle_context: Optional[LastCycleContext] = None
    last_defined: List[str] = field(default_factory=list)
    prompt_id: str = ""
    prompt_hash: str = ""

    def history_as_dicts(self) -> List[Dict[str, str]]:
        """Return the cycle history as plain role/content dicts."""
        return [{"role": m.role, "content": m.content} for m in self.cycle_history]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "iteration": self.iteration,
            "cycle_history": [m.to_dict() for m in self.cycle_history],
            "last_cycle_context": (
                self.last_cycle_context.to_dict() if self.last_cycle_context else None
            ),
            "last_defined": list(self.last_defined),
            "prompt_id": self.prompt_id,
            "prompt_hash": self.prompt_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CycleState":
        last_ctx = data.get("last_cycle_context")
        return cls(
            cycle_id=int(data.get("cycle_id", 1)),
            iteration=int(data.get("iteration", 1)),
            cycle_history=[CycleMessage.from_dict(m) for m in data.get("cycle_history") or []],
            last_cycle_context=LastCycleContext.from_dict(last_ctx) if last_ctx else None,
            last_defined=list(data.get("last_defined") or []),
            prompt_id=str(data.get("prompt_id", "")),
            prompt_hash=str(data.get("prompt_hash", "")),
        )


@dataclass
class SearchState:
    """Search progress for a session."""

    status: str = "idle"
    category: str = ""
    search_count: int = 0
    last_product: Optional[ProductInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "category": self.category,
            "search_count": self.search_count,
            "last_product": self.last_product.to_dict() if self.last_product else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchState":
        last = data.get("last_product")
        return cls(
            status=str(data.get("status", "idle")),
            category=str(data.get("category", "")),
            search_count=int(data.get("search_count", 0)),
            last_product=ProductInfo.from_dict(last) if last else None,
        )


@dataclass
class ConversationContext:
    """Compact summary of the conversation, refreshed periodically."""

    summary: str = ""
    preferences: Dict[str, Any] = field(default_factory=dict)
    exclusions: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "preferences": dict(self.preferences),
            "exclusions": list(self.exclusions),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationContext":
        return cls(
            summary=str(data.get("summary", "")),
            preferences=dict(data.get("preferences") or {}),
            exclusions=list(data.get("exclusions") or []),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class Session:
    """Per-session chat state read and written by the decision core."""

    session_id: str
    country: str = "CH"
    language: str = "de"
    currency: str = "CHF"
    search_state: SearchState = field(default_factory=SearchState)
    cycle_state: CycleState = field(default_factory=CycleState)
    conversation_context: Optional[ConversationContext] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "country": self.country,
            "language": self.language,
            "currency": self.currency,
            "search_state": self.search_state.to_dict(),
            "cycle_state": self.cycle_state.to_dict(),
            "conversation_context": (
                self.conversation_context.to_dict() if self.conversation_context else None
            ),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        ctx = data.get("conversation_context")
        return cls(
            session_id=str(data.get("session_id", "")),
            country=str(data.get("country", "CH")),
            language=str(data.get("language", "de")),
            currency=str(data.get("currency", "CHF")),
            search_state=SearchState.from_dict(data.get("search_state") or {}),
            cycle_state=CycleState.from_dict(data.get("cycle_state") or {}),
            conversation_context=ConversationContext.from_dict(ctx) if ctx else None,
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
            version=int(data.get("version", 0)),
        )
