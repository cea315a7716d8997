import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from .errors import AllProvidersFailed, CooldownActive, InvalidRequest, SuggestionNotFound
from .models import DesignRequest, DesignSuggestion
from .orchestrator import DesignOrchestrator, Trail

logger = logging.getLogger(__name__)


class CooldownGate:
    """
    Blocks new generation attempts for a fixed window after every provider
    was exhausted by rate limiting. Checked before any provider is contacted.
    """

    def __init__(self, duration_s: float, clock: Callable[[], float] = time.monotonic):
        self.duration_s = duration_s
        self._clock = clock
        self._until: Optional[float] = None

    def start(self) -> None:
        self._until = self._clock() + self.duration_s
        logger.warning(f"All providers rate limited; cooling down for {self.duration_s:.0f}s")

    def remaining(self) -> float:
        if self._until is None:
            return 0.0
        left = self._until - self._clock()
        if left <= 0:
            self._until = None
            return 0.0
        return left

    @property
    def active(self) -> bool:
        return self.remaining() > 0

    def check(self) -> None:
        left = self.remaining()
        if left > 0:
            raise CooldownActive(left)


class DesignSession:
    """
    In-memory state for one designer's page: the suggestions shown so far
    (newest first) and the cooldown gate. Nothing here is persisted.
    """

    def __init__(self, orchestrator: DesignOrchestrator, cooldown_s: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.orchestrator = orchestrator
        if cooldown_s is None:
            cooldown_s = orchestrator.settings.cooldown_s
        self.cooldown = CooldownGate(cooldown_s, clock=clock)
        self.suggestions: List[DesignSuggestion] = []
        # call id -> suggestion id being refined (None for new generations)
        self.pending: Dict[str, Optional[str]] = {}

    def get(self, suggestion_id: str) -> DesignSuggestion:
        for suggestion in self.suggestions:
            if suggestion.id == suggestion_id:
                return suggestion
        raise SuggestionNotFound(suggestion_id)

    def _note_failure(self, error: AllProvidersFailed) -> None:
        # Only exhaustion that ended on a rate limit earns the cooldown.
        if error.rate_limited:
            self.cooldown.start()

    async def generate(self, request: DesignRequest) -> DesignSuggestion:
        suggestion, _ = await self.generate_with_trace(request)
        return suggestion

    async def refine(self, suggestion_id: str, instruction: str, request: DesignRequest) -> DesignSuggestion:
        refined, _ = await self.refine_with_trace(suggestion_id, instruction, request)
        return refined

    async def generate_with_trace(self, request: DesignRequest) -> Tuple[DesignSuggestion, Trail]:
        self.cooldown.check()
        call_id = uuid.uuid4().hex
        self.pending[call_id] = None
        try:
            suggestion, trail = await self.orchestrator.generate_with_trace(request)
        except AllProvidersFailed as e:
            self._note_failure(e)
            raise
        finally:
            self.pending.pop(call_id, None)

        self.suggestions.insert(0, suggestion)
        return suggestion, trail

    async def refine_with_trace(
        self, suggestion_id: str, instruction: str, request: DesignRequest
    ) -> Tuple[DesignSuggestion, Trail]:
        """
        Refines an existing suggestion. The prior description comes from the
        stored suggestion; the result replaces it under the same id.
        """
        self.cooldown.check()
        prior = self.get(suggestion_id)
        if not (instruction or "").strip():
            raise InvalidRequest("Please describe the change you want to make.")

        refinement_request = request.with_refinement(prior.description, instruction)
        call_id = uuid.uuid4().hex
        self.pending[call_id] = suggestion_id
        try:
            refined, trail = await self.orchestrator.refine_with_trace(refinement_request, suggestion_id)
        except AllProvidersFailed as e:
            self._note_failure(e)
            raise
        finally:
            self.pending.pop(call_id, None)

        self._replace(refined)
        return refined, trail

    def _replace(self, refined: DesignSuggestion) -> None:
        for index, suggestion in enumerate(self.suggestions):
            if suggestion.id == refined.id:
                self.suggestions[index] = refined
                return
        # Removed while the refinement was in flight; surface it again at the top.
        logger.info(f"Suggestion {refined.id} vanished during refinement; re-adding")
        self.suggestions.insert(0, refined)

    def refining_ids(self) -> List[str]:
        return [sid for sid in self.pending.values() if sid]


class SessionRegistry:
    """Per-page sessions keyed by the X-Session-Id header. Single process, not durable."""

    def __init__(self, orchestrator: DesignOrchestrator, max_sessions: int = 1000):
        self.orchestrator = orchestrator
        self.max_sessions = max_sessions
        self._sessions: Dict[str, DesignSession] = {}

    def get(self, session_id: str) -> DesignSession:
        session = self._sessions.get(session_id)
        if session is None:
            if len(self._sessions) >= self.max_sessions:
                # Evict the oldest session (dicts keep insertion order).
                oldest = next(iter(self._sessions))
                logger.info(f"Session limit reached; dropping session {oldest}")
                del self._sessions[oldest]
            session = DesignSession(self.orchestrator)
            self._sessions[session_id] = session
        return session

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
