import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from storytime import ai_story, story_engine
from storytime.ai_story import StorySource
from storytime.models import AIStoryState, ScenarioGraph, StoryState
from storytime.story_generator import generate_story

logger = logging.getLogger(__name__)

# Pause between revealing a consequence and loading the next scene
COMMIT_DELAY_SECONDS: float = float(os.getenv("STORYTIME_COMMIT_DELAY", "2"))

ChangeListener = Callable[["ReaderSession"], Awaitable[None]]


class ReaderSession(ABC):
    """One reader's open story plus the task that commits their last choice.

    Every commit, timed or immediate, runs inside ``_commit_task`` so that
    ``back`` and ``close`` can always cancel it. Subclasses supply the state
    shape and how a commit is resolved.
    """

    def __init__(
        self,
        session_id: str,
        commit_delay: float | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.session_id = session_id
        self.commit_delay = COMMIT_DELAY_SECONDS if commit_delay is None else commit_delay
        self.on_change = on_change
        self._commit_task: asyncio.Task | None = None
        self._joinable = False

    @property
    @abstractmethod
    def story(self) -> StoryState: ...

    @property
    def commit_pending(self) -> bool:
        return self._commit_task is not None and not self._commit_task.done()

    async def choose(self, index: int) -> StoryState:
        choice = story_engine.choice_at(self.story, index)
        self._apply_selection(choice)
        self._schedule_commit(self.commit_delay)
        await self._notify()
        return self.story

    async def commit_now(self) -> StoryState:
        """Skip the remaining delay. Joins an immediate commit already in flight."""
        if not (self._joinable and self.commit_pending):
            self._schedule_commit(0)
        # asyncio.wait returns normally when back or close cancels the task
        await asyncio.wait({self._commit_task})
        return self.story

    async def back(self) -> StoryState:
        """Undo the last step. Raises NoPreviousScenarioError at the first scene."""
        self._cancel_commit()
        self._apply_back()
        await self._notify()
        return self.story

    def close(self) -> None:
        self._cancel_commit()

    def _schedule_commit(self, delay: float) -> None:
        self._cancel_commit()
        self._joinable = delay == 0
        self._commit_task = asyncio.create_task(self._commit_after_delay(delay))

    def _cancel_commit(self) -> None:
        if self._commit_task is not None and not self._commit_task.done():
            # Never cancel ourselves from inside the running commit
            if self._commit_task is not asyncio.current_task():
                self._commit_task.cancel()
        self._commit_task = None

    async def _commit_after_delay(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self._joinable = True
            await self._resolve_commit()
            await self._notify()
        except asyncio.CancelledError:
            logger.debug(f"Session {self.session_id} discarded a pending commit")
            raise
        except Exception as e:
            logger.error(f"Session {self.session_id} commit failed: {e}", exc_info=True)

    async def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            await self.on_change(self)
        except Exception as e:
            logger.warning(f"Session {self.session_id} listener failed: {e}")

    @abstractmethod
    def _apply_selection(self, choice) -> None: ...

    @abstractmethod
    def _apply_back(self) -> None: ...

    @abstractmethod
    async def _resolve_commit(self) -> None: ...


class StorySession(ReaderSession):
    def __init__(self, session_id: str, graph: ScenarioGraph, **kwargs) -> None:
        super().__init__(session_id, **kwargs)
        self.graph = graph
        self.state = story_engine.start(graph)

    @property
    def story(self) -> StoryState:
        return self.state

    def _apply_selection(self, choice) -> None:
        self.state = story_engine.select_choice(self.state, choice)

    def _apply_back(self) -> None:
        self.state = story_engine.go_back(self.state, self.graph.scenarios)

    async def _resolve_commit(self) -> None:
        self.state = story_engine.commit(self.state, self.graph.scenarios)


class AIStorySession(ReaderSession):
    def __init__(
        self,
        session_id: str,
        ai_state: AIStoryState,
        generate: StorySource = generate_story,
        **kwargs,
    ) -> None:
        super().__init__(session_id, **kwargs)
        self.ai_state = ai_state
        self.generate = generate

    @classmethod
    async def open(
        cls,
        session_id: str,
        prompt: str,
        generate: StorySource = generate_story,
        title: str = "Untitled Story",
        **kwargs,
    ) -> "AIStorySession":
        ai_state = await ai_story.begin(prompt, generate, title)
        return cls(session_id, ai_state, generate, **kwargs)

    @property
    def story(self) -> StoryState:
        return self.ai_state.story

    def _apply_selection(self, choice) -> None:
        self.ai_state = ai_story.select(self.ai_state, choice)

    def _apply_back(self) -> None:
        self.ai_state = ai_story.go_back(self.ai_state)

    async def _resolve_commit(self) -> None:
        if self.story.pending_choice is None or self.ai_state.loading:
            return
        self.ai_state = ai_story.mark_loading(self.ai_state)
        await self._notify()
        try:
            self.ai_state = await ai_story.advance(self.ai_state, self.generate)
        except asyncio.CancelledError:
            self.ai_state = self.ai_state.model_copy(update={"loading": False})
            raise


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, ReaderSession] = {}

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def add(self, session: ReaderSession) -> ReaderSession:
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> ReaderSession | None:
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)

    def __len__(self) -> int:
        return len(self._sessions)
