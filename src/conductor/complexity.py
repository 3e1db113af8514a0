from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

COMPLEX_KEYWORDS = (
    "design",
    "implement",
    "refactor",
    "architecture",
    "optimize",
    "research",
    "explore",
    "plan",
    "codebase",
    "entire",
    "all",
    "every",
    "batch",
    "migrate",
    "integrate",
    "convert",
    "rewrite",
    "workflow",
    "multi-step",
    "iterate",
)
MULTI_STEP_KEYWORDS = (
    "then",
    "next",
    "after that",
    "finally",
    "first",
    "step",
    "steps",
    "stage",
    "phase",
    "pipeline",
    "sequence",
    "multiple",
    "several",
    "series",
    "analyze",
)
SIMPLE_KEYWORDS = (
    "what is",
    "how do",
    "how to",
    "explain",
    "show",
    "display",
    "list",
    "read",
    "single",
    "simple",
    "hello",
    "hi",
    "test",
)
WORKFLOW_MARKERS = ("#workflow", "#multi-step")
DIRECT_MARKERS = ("#simple", "#quick")


class ComplexityLevel(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"

    @property
    def uses_workflow(self) -> bool:
        return self is not ComplexityLevel.SIMPLE

    @property
    def confidence(self) -> float:
        return {"simple": 0.3, "medium": 0.6, "complex": 0.9}[self.value]


def _mentions(text: str, phrase: str) -> bool:
    return re.search(rf"(?<![\w#-]){re.escape(phrase)}(?![\w-])", text) is not None


@dataclass(frozen=True, slots=True)
class ComplexityEvaluator:
    """Scores a request by length and wording to decide whether it needs the full loop.

    Requests of 50+ characters score 0.5 and 100+ score 1.0. Each complex keyword adds
    0.8, each multi-step keyword 0.5, each simple keyword subtracts 0.3; the keyword
    part is clamped to ``[0, 2]``. A total of 1.5 or more is complex, 0.5 or more is
    medium, anything lower is simple. ``#workflow`` and ``#simple`` style markers
    override the score.
    """

    complex_keywords: tuple[str, ...] = COMPLEX_KEYWORDS
    multi_step_keywords: tuple[str, ...] = MULTI_STEP_KEYWORDS
    simple_keywords: tuple[str, ...] = SIMPLE_KEYWORDS

    def score(self, request: str) -> float:
        text = request.lower()
        length = len(text)
        length_score = 1.0 if length >= 100 else 0.5 if length >= 50 else 0.0

        keyword_score = 0.8 * sum(_mentions(text, word) for word in self.complex_keywords)
        keyword_score += 0.5 * sum(_mentions(text, word) for word in self.multi_step_keywords)
        keyword_score -= 0.3 * sum(_mentions(text, word) for word in self.simple_keywords)
        return length_score + min(max(keyword_score, 0.0), 2.0)

    def evaluate(self, request: str) -> ComplexityLevel:
        total = self.score(request)
        if total >= 1.5:
            return ComplexityLevel.COMPLEX
        if total >= 0.5:
            return ComplexityLevel.MEDIUM
        return ComplexityLevel.SIMPLE

    @staticmethod
    def explicit_mode(request: str) -> bool | None:
        """``True`` for a workflow marker, ``False`` for a direct marker, else ``None``."""
        text = request.lower()
        if any(marker in text for marker in WORKFLOW_MARKERS):
            return True
        if any(marker in text for marker in DIRECT_MARKERS):
            return False
        return None

    def should_use_workflow(self, request: str) -> bool:
        explicit = self.explicit_mode(request)
        if explicit is not None:
            return explicit
        return self.evaluate(request).uses_workflow
