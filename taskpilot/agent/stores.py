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

"""Engine-wide mutable stores and their lifecycle.

``EngineStore`` owns every piece of state shared across runs:

- conversation states and execution metrics
- the classification cache
- recovery attempt counters
- the token rate limiter
- conversation leases (one active run per conversation)

Use it as an async context manager so the periodic expiry sweep is started
and stopped with it:

    async with EngineStore(settings) as store:
        service = AgenticTaskService(gateway, registry, store, settings)
        ...
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Dict, List, Optional, Set

from taskpilot.agent.complexity_classifier import make_classification_cache
from taskpilot.agent.conversation_state import ConversationStateStore
from taskpilot.agent.error_recovery import RecoveryAttemptTracker
from taskpilot.agent.metrics_collector import MetricsCollector
from taskpilot.agent.rate_limiter import TokenRateLimiter
from taskpilot.config.settings import Settings
from taskpilot.core.clock import Clock, SystemClock
from taskpilot.core.errors import AlreadyRunningError

logger = logging.getLogger(__name__)


class ConversationLeases:
    """Exclusive per-conversation run leases."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._held: Dict[str, object] = {}

    def acquire(self, conversation_id: str) -> object:
        """Take the lease for a conversation.

        Returns:
            A token identifying this holder, for ``release``

        Raises:
            AlreadyRunningError: If a run already holds it
        """
        with self._lock:
            if conversation_id in self._held:
                raise AlreadyRunningError(conversation_id)
            token = object()
            self._held[conversation_id] = token
            return token

    def release(self, conversation_id: str, token: Optional[object] = None) -> None:
        """Release a lease. With a token, only the matching holder is released."""
        with self._lock:
            if token is None or self._held.get(conversation_id) is token:
                self._held.pop(conversation_id, None)

    def is_held(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._held

    def held(self) -> Set[str]:
        with self._lock:
            return set(self._held)

    def clear(self) -> None:
        with self._lock:
            self._held.clear()


class EngineStore:
    """Shared stores for one engine instance."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self._sleep = sleep

        self.states = ConversationStateStore(self.clock)
        self.metrics = MetricsCollector(self.clock)
        self.classification_cache = make_classification_cache(
            ttl=self.settings.classification_cache_ttl,
            maxsize=self.settings.classification_cache_size,
            clock=self.clock,
        )
        self.attempts = RecoveryAttemptTracker()
        self.rate_limiter = TokenRateLimiter.from_settings(self.settings, self.clock)
        self.leases = ConversationLeases()

        self._sweep_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "EngineStore":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic expiry sweep. Requires a running event loop."""
        if self.is_sweeping:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.debug(f"Started state sweep every {self.settings.sweep_interval}s")

    async def close(self) -> None:
        """Stop the sweep and drop all stored state."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.clear()

    def sweep(self) -> List[str]:
        """Drop expired states and metrics of conversations not currently running."""
        running = self.leases.held()
        max_age = self.settings.state_max_age
        expired = set(self.states.sweep(max_age, protected=running))
        expired.update(self.metrics.sweep(max_age, protected=running))
        for conversation_id in expired:
            self.attempts.clear(conversation_id)
            self.rate_limiter.clear(conversation_id)
        if expired:
            logger.info(f"Expired {len(expired)} idle conversations")
        return sorted(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await self._sleep(self.settings.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"State sweep failed: {e}", exc_info=True)

    def clear(self) -> None:
        self.states.clear()
        self.metrics.clear()
        self.classification_cache.clear()
        self.attempts.clear_all()
        self.rate_limiter.clear_all()
        self.leases.clear()
