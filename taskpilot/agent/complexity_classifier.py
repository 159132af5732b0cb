# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Task complexity classification for step budgeting and model selection.

The fast path matches the message against weighted category patterns and
scores it by the highest matched weight. Scores that land in the ambiguous
band can optionally be handed to a cheap model for a second opinion.
Results are cached per (message, context) for a fixed TTL.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from cachetools import TTLCache

from taskpilot.agent.protocols import LanguageModelGateway, ModelHandle, close_stream
from taskpilot.agent.types import ClassificationMethod, ComplexityScore
from taskpilot.config.settings import Settings
from taskpilot.core.clock import Clock, SystemClock
from taskpilot.core.errors import ClassificationError

logger = logging.getLogger(__name__)


# (pattern, weight, factor name), highest-priority categories first
PATTERNS: List[Tuple[str, float, str]] = [
    (r"\b(plan|planning|roadmap|architecture)\b", 1.0, "planning"),
    (
        r"\b(create|build|make|generate)\s+(?:\w+\s+){0,2}(page|pages|site|website)\b",
        0.95,
        "page-creation",
    ),
    (
        r"\b(implement|build)\s+(?:\w+\s+){0,2}(full|complete|entire|whole)\b"
        r"|\bfrom\s+scratch\b|\bend[-\s]to[-\s]end\b",
        0.9,
        "full-implementation",
    ),
    (r"\b(refactor\w*|restructure|rebuild|rewrite|migrate)\b", 0.9, "refactor"),
    (r"\b(fix|fixes|debug|bug|bugs|broken|crash\w*)\b", 0.9, "bug-fix"),
    (
        r"\b(theme|design\s+system|dark\s+mode|branding|colou?r\s+scheme|palette)\b",
        0.85,
        "theme-change",
    ),
    (
        r"\b(create|build|add|generate)\s+(?:\w+\s+){0,2}(component|components|widget|form)\b",
        0.85,
        "custom-component",
    ),
    (r"\b(upload|image|images|logo|asset|assets|file|files)\b", 0.8, "tool-required"),
    (r"\b(layout|reorganize|rearrange|grid|flexbox)\b", 0.75, "layout-change"),
    (
        r"\b(multiple|several|many|all)\s+(?:\w+\s+)?"
        r"(pages?|components?|sections?|features?|buttons?|elements?)\b"
        r"|\b(and\s+also|as\s+well\s+as)\b",
        0.5,
        "multi-feature",
    ),
    (r"\b(colou?r|background|font|size|style|styling|padding|margin|border)\b", 0.3, "styling"),
    (
        r"\b(change|update|modify|edit|replace)\s+(?:\w+\s+){0,3}"
        r"(text|title|heading|copy|wording|label)\b",
        0.2,
        "text-change",
    ),
]

# A selected UI element in the request context nudges the score up slightly
ELEMENT_CONTEXT_WEIGHT = 0.1
ELEMENT_CONTEXT_KEYS = ("selected_element_id", "selectedElementId")

# Scores in this band (inclusive) or exactly zero are ambiguous
AMBIGUOUS_BAND = (0.4, 0.6)

MODEL_LABEL_SCORES = {
    "VERY_HIGH": 1.0,
    "HIGH": 0.9,
    "MEDIUM": 0.5,
    "SIMPLE": 0.2,
}

NEUTRAL_SCORE = 0.5

CLASSIFIER_PROMPT = """Classify the complexity of the user's request for a website-building assistant.
Answer with exactly one label:
- SIMPLE: a single small edit (text, one color, one style)
- MEDIUM: a few related changes or a new section
- HIGH: multi-file work, refactoring, bug fixing, new pages
- VERY_HIGH: planning, architecture or full implementations

Reply with the label only."""

TOOL_CALL_INDICATORS = [
    re.compile(r"upload|file|image|logo|asset", re.IGNORECASE),
    re.compile(r"update|change|modify|edit|add|remove|delete", re.IGNORECASE),
    re.compile(r"color|style|font|size|layout|design", re.IGNORECASE),
    re.compile(r"create|build|generate|make", re.IGNORECASE),
]


def requires_tool_calling(message: str) -> bool:
    """Whether the request will almost certainly need tools to fulfil."""
    return any(pattern.search(message) for pattern in TOOL_CALL_INDICATORS)


def make_classification_cache(
    ttl: float = 3600.0, maxsize: int = 512, clock: Optional[Clock] = None
) -> TTLCache:
    clock = clock or SystemClock()
    return TTLCache(maxsize=maxsize, ttl=ttl, timer=clock.monotonic)


class ComplexityClassifier:
    """Scores requests into complexity tiers.

    Example:
        classifier = ComplexityClassifier(settings)
        result = await classifier.classify("Change the button color to blue")
        result.score      # 0.3
        result.complexity # TaskComplexity.SIMPLE
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[LanguageModelGateway] = None,
        cache: Optional[TTLCache] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or Settings()
        self.gateway = gateway
        self.cache = (
            cache
            if cache is not None
            else make_classification_cache(
                ttl=self.settings.classification_cache_ttl,
                maxsize=self.settings.classification_cache_size,
                clock=clock,
            )
        )
        self._patterns = [
            (re.compile(pattern, re.IGNORECASE), weight, name) for pattern, weight, name in PATTERNS
        ]

    @staticmethod
    def cache_key(message: str, context: Optional[Dict[str, Any]] = None) -> Tuple[str, str]:
        return (message, json.dumps(context or {}, sort_keys=True, default=str))

    def classify_fast(
        self, message: str, context: Optional[Dict[str, Any]] = None
    ) -> ComplexityScore:
        """Deterministic pattern-only classification.

        Score is the maximum weight over matched categories, clamped to [0, 1].
        """
        factors: List[str] = []
        score = 0.0
        for pattern, weight, name in self._patterns:
            if pattern.search(message):
                factors.append(name)
                score = max(score, weight)

        if context and any(context.get(key) for key in ELEMENT_CONTEXT_KEYS):
            factors.append("element-context")
            score = max(score, ELEMENT_CONTEXT_WEIGHT)

        return ComplexityScore(
            score=min(max(score, 0.0), 1.0),
            factors=factors,
            method=ClassificationMethod.REGEX,
        )

    async def classify(
        self, message: str, context: Optional[Dict[str, Any]] = None
    ) -> ComplexityScore:
        """Classify a request. Never raises."""
        try:
            key = self.cache_key(message, context)
        except (TypeError, ValueError) as e:
            logger.debug(f"Unhashable classification context, skipping cache: {e}")
            key = None

        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Classification cache hit: score={cached.score:.2f}")
                return ComplexityScore(
                    score=cached.score,
                    factors=list(cached.factors) + ["cached"],
                    method=cached.method,
                )

        try:
            result = self.classify_fast(message, context)
            if self._should_escalate(result):
                result = await self._classify_hybrid(message, result)
        except Exception as e:
            logger.warning(f"Complexity classification failed, using neutral score: {e}")
            result = ComplexityScore(
                score=NEUTRAL_SCORE,
                factors=["classification-fallback"],
                method=ClassificationMethod.REGEX,
            )

        if key is not None:
            self.cache[key] = ComplexityScore(
                score=result.score, factors=list(result.factors), method=result.method
            )
        logger.debug(
            f"Classified request: score={result.score:.2f} factors={result.factors} "
            f"method={result.method.value}"
        )
        return result

    def _should_escalate(self, result: ComplexityScore) -> bool:
        if not self.settings.hybrid_classification or self.gateway is None:
            return False
        low, high = AMBIGUOUS_BAND
        return result.score == 0 or low <= result.score <= high

    async def _classify_hybrid(self, message: str, fast: ComplexityScore) -> ComplexityScore:
        method = ClassificationMethod.HYBRID if fast.factors else ClassificationMethod.LLM_WEAK
        try:
            label = await asyncio.wait_for(
                self._ask_model(message), timeout=self.settings.classifier_timeout
            )
        except Exception as e:
            logger.warning(f"Model-based classification failed, using neutral score: {e}")
            return ComplexityScore(
                score=NEUTRAL_SCORE,
                factors=list(fast.factors) + ["llm-fallback"],
                method=method,
            )

        return ComplexityScore(
            score=MODEL_LABEL_SCORES[label],
            factors=list(fast.factors) + [f"llm-{label.lower()}"],
            method=method,
        )

    async def _ask_model(self, message: str) -> str:
        model = ModelHandle(name=self.settings.effective_classifier_model, kind="weak")
        messages = [{"role": "user", "content": message}]
        stream = self.gateway.stream_steps(model, CLASSIFIER_PROMPT, messages, {})
        try:
            step = await stream.__anext__()
        except StopAsyncIteration:
            raise ClassificationError("Classifier model returned no output")
        finally:
            await close_stream(stream)
        return parse_label(step.text)


def parse_label(text: str) -> str:
    """Extract a complexity label from model output.

    Raises:
        ClassificationError: If no known label is present
    """
    normalized = re.sub(r"[\s-]+", "_", text.strip().upper())
    # VERY_HIGH contains HIGH, so check longer labels first
    for label in sorted(MODEL_LABEL_SCORES, key=len, reverse=True):
        if label in normalized:
            return label
    raise ClassificationError(f"Unrecognized complexity label: {text!r}")
