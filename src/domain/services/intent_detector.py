"""Intent detector - continue-intent vs new task, heuristic with LRU cache."""

from dataclasses import dataclass
from functools import lru_cache

CONTINUE_PATTERNS = (
    "continue",
    "keep going",
    "resume",
    "proceed",
    "finish",
    "complete",
    "go on",
    "next step",
    "what were we doing",
    "where were we",
    "status",
)


@dataclass(frozen=True)  # frozen for hashable (caching)
class Intent:
    """Detected intent for a user message."""

    kind: str  # "continue" | "task"
    matched: str | None = None


# Module-level cached function (avoids lru_cache on bound method pitfalls)
@lru_cache(maxsize=128)
def _detect_impl(text: str) -> Intent:
    """Run internal detection logic (cached at module level)."""
    if not text:
        return Intent(kind="task")
    for phrase in CONTINUE_PATTERNS:
        if phrase in text:
            return Intent(kind="continue", matched=phrase)
    return Intent(kind="task")


class IntentDetector:
    """Fast substring match against a fixed continue-phrase set."""

    def detect(self, message: str) -> Intent:
        """Detect intent from message (cached)."""
        text = message.strip().lower()
        return _detect_impl(text)

    def is_continue_intent(self, message: str) -> bool:
        return self.detect(message).kind == "continue"
