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

"""Strong/weak model selection by complexity threshold."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from taskpilot.agent.protocols import ModelHandle
from taskpilot.agent.types import ComplexityScore, TaskComplexity
from taskpilot.config.settings import Settings
from taskpilot.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class ModelSelection:
    """A model choice with the reasoning behind it."""

    model: ModelHandle
    score: float
    factors: List[str] = field(default_factory=list)
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model.name,
            "kind": self.model.kind,
            "score": self.score,
            "factors": list(self.factors),
            "reasoning": self.reasoning,
        }


@dataclass
class ModelUsage:
    model_name: str
    kind: str
    request_count: int = 0
    last_used: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "kind": self.kind,
            "request_count": self.request_count,
            "last_used": self.last_used,
        }


class ModelSelector:
    """Picks the strong or weak model for a run.

    Selection depends only on the score and the threshold; step planning
    has no influence on it.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or Settings()
        self._clock = clock or SystemClock()
        self._usage: Dict[str, ModelUsage] = {}

    def select_model(self, score: float, threshold: Optional[float] = None) -> ModelHandle:
        threshold = self.settings.complexity_threshold if threshold is None else threshold
        if score >= threshold:
            return ModelHandle(name=self.settings.strong_model, kind="strong")
        return ModelHandle(name=self.settings.weak_model, kind="weak")

    def select(
        self,
        complexity: ComplexityScore,
        requires_tools: bool = False,
        threshold: Optional[float] = None,
    ) -> ModelSelection:
        """Select a model and record why it was chosen."""
        model = self.select_model(complexity.score, threshold)
        factors = ", ".join(complexity.factors) or "none"
        if model.kind == "strong":
            reasoning = (
                f"High complexity ({complexity.score:.2f}) requires strong model. "
                f"Factors: {factors}"
            )
        else:
            reasoning = (
                f"Low complexity ({complexity.score:.2f}) can use weak model. "
                f"Factors: {factors}"
            )
        if requires_tools:
            reasoning += " | Tool calling expected"

        self._record_usage(model)
        logger.info(f"Model selected: {model.name} ({model.kind}) - {reasoning}")
        return ModelSelection(
            model=model,
            score=complexity.score,
            factors=list(complexity.factors),
            reasoning=reasoning,
        )

    def fallback(self) -> ModelHandle:
        model = ModelHandle(name=self.settings.fallback_model, kind="fallback")
        logger.warning(f"Using fallback model: {model.name}")
        self._record_usage(model)
        return model

    def should_escalate(
        self, complexity: TaskComplexity, step_number: int, message_count: int
    ) -> bool:
        """Whether a long-running Moderate+ run should move to the strong model."""
        if not self.settings.dynamic_model_escalation:
            return False
        return (
            complexity != TaskComplexity.SIMPLE
            and step_number > self.settings.escalation_min_step
            and message_count > self.settings.escalation_min_messages
        )

    def escalated(self) -> ModelHandle:
        model = ModelHandle(name=self.settings.strong_model, kind="strong")
        self._record_usage(model)
        return model

    def _record_usage(self, model: ModelHandle) -> None:
        key = f"{model.name}-{model.kind}"
        usage = self._usage.get(key)
        if usage is None:
            usage = ModelUsage(model_name=model.name, kind=model.kind)
            self._usage[key] = usage
        usage.request_count += 1
        usage.last_used = self._clock.time()

    def get_usage(self) -> List[ModelUsage]:
        return list(self._usage.values())
