import threading
from typing import Dict


class TokenStats:
    """Running token usage totals for model calls. Safe to share across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_requests = 0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_tokens = 0
        self.requests_with_grounding = 0

    def record(self, input_tokens: int, total_tokens: int, with_grounding: bool) -> None:
        """Record one call. Output tokens are derived as total minus input."""
        output_tokens = 0
        if total_tokens > 0 and input_tokens > 0:
            output_tokens = max(0, total_tokens - input_tokens)
        with self._lock:
            self.total_requests += 1
            self.total_input_tokens += max(0, input_tokens)
            self.total_output_tokens += output_tokens
            self.total_tokens += max(0, total_tokens)
            if with_grounding:
                self.requests_with_grounding += 1

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            n = self.total_requests
            return {
                "total_requests": n,
                "total_input_tokens": self.total_input_tokens,
                "total_output_tokens": self.total_output_tokens,
                "total_tokens": self.total_tokens,
                "requests_with_grounding": self.requests_with_grounding,
                "average_input_tokens": self.total_input_tokens / n if n else 0.0,
                "average_output_tokens": self.total_output_tokens / n if n else 0.0,
            }
