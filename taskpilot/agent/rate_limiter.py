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

"""Sliding-window token rate limiting between steps."""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Optional, Tuple

from taskpilot.config.settings import Settings
from taskpilot.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class RateLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class DelayDecision:
    level: RateLevel
    delay: float
    current_rate: int

    @property
    def should_delay(self) -> bool:
        return self.delay > 0


class TokenRateLimiter:
    """Tracks tokens per conversation over a sliding window.

    When the tokens spent inside the window cross the warning or critical
    threshold, ``decide`` returns an extra delay to apply before the next step.
    """

    def __init__(
        self,
        warning_threshold: int = 10000,
        critical_threshold: int = 15000,
        window: float = 60.0,
        warning_delay: float = 3.0,
        critical_delay: float = 25.0,
        clock: Optional[Clock] = None,
    ):
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.window = window
        self.warning_delay = warning_delay
        self.critical_delay = critical_delay
        self._clock = clock or SystemClock()
        self._usage: Dict[str, Deque[Tuple[float, int]]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "TokenRateLimiter":
        return cls(
            warning_threshold=settings.token_rate_warning,
            critical_threshold=settings.token_rate_critical,
            window=settings.token_rate_window,
            warning_delay=settings.token_rate_warning_delay,
            critical_delay=settings.token_rate_critical_delay,
            clock=clock,
        )

    def add_usage(self, conversation_id: str, tokens: int) -> None:
        if tokens <= 0:
            return
        entries = self._usage.setdefault(conversation_id, deque())
        entries.append((self._clock.monotonic(), tokens))
        self._prune(conversation_id)

    def current_rate(self, conversation_id: str) -> int:
        self._prune(conversation_id)
        return sum(tokens for _, tokens in self._usage.get(conversation_id, ()))

    def decide(self, conversation_id: str) -> DelayDecision:
        rate = self.current_rate(conversation_id)
        if rate >= self.critical_threshold:
            decision = DelayDecision(RateLevel.CRITICAL, self.critical_delay, rate)
        elif rate >= self.warning_threshold:
            decision = DelayDecision(RateLevel.WARNING, self.warning_delay, rate)
        else:
            decision = DelayDecision(RateLevel.NORMAL, 0.0, rate)
        if decision.should_delay:
            logger.debug(
                f"Token rate {decision.level.value} for {conversation_id}: "
                f"{rate} tokens/window, adding {decision.delay:.1f}s"
            )
        return decision

    def clear(self, conversation_id: str) -> None:
        self._usage.pop(conversation_id, None)

    def clear_all(self) -> None:
        self._usage.clear()

    def _prune(self, conversation_id: str) -> None:
        entries = self._usage.get(conversation_id)
        if not entries:
            return
        cutoff = self._clock.monotonic() - self.window
        while entries and entries[0][0] < cutoff:
            entries.popleft()
        if not entries:
            del self._usage[conversation_id]
