import json
import logging
import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class AssistantReply(BaseModel):
    """Structured reply the model is instructed to return every turn."""

    model_config = ConfigDict(extra="allow")

    response_type: Literal["dialogue", "search", "api_request"]
    output: str = ""
    quick_replies: List[str] = Field(default_factory=list)
    search_phrase: str = ""
    search_type: str = "parameters"
    category: str = ""
    price_filter: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None

    @field_validator("quick_replies", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value):
        return value or []

    @field_validator("output", "search_phrase", "category", mode="before")
    @classmethod
    def _none_to_empty_str(cls, value):
        return "" if value is None else value

    @field_validator("search_type", mode="before")
    @classmethod
    def _default_search_type(cls, value):
        return value or "parameters"

    @property
    def wants_search(self) -> bool:
        return self.response_type in ("search", "api_request") and bool(self.search_phrase)


def extract_json(text: str) -> str:
    """Pull a JSON object out of free text, e.g. a grounded answer with prose around it."""
    text = text.strip()
    match = _FENCE_RE.search(text)
    if match and match.group(1).strip().startswith("{"):
        return match.group(1).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


def parse_assistant_reply(text: str) -> AssistantReply:
    """Parse model output into an ``AssistantReply``.

    Raises ValueError when no usable JSON object with a ``response_type`` is found.
    """
    candidate = extract_json(text or "")
    if not candidate:
        raise ValueError("empty response text")
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ValueError(f"failed to parse reply JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("reply JSON is not an object")
    if not data.get("response_type"):
        raise ValueError("missing response_type in reply")
    try:
        return AssistantReply.model_validate(data)
    except ValidationError as e:
        logger.warning("Reply failed validation: %s", e)
        raise ValueError(str(e)) from e
