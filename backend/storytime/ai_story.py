import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from storytime import story_engine
from storytime.errors import InvalidSelectionError, RemoteFormatError, RemoteRequestError
from storytime.models import (
    AIStoryState,
    Choice,
    GeneratedStory,
    SavedTranscript,
    StorySegment,
    StoryState,
)
from storytime.story_generator import to_scenario

logger = logging.getLogger(__name__)

StorySource = Callable[[str], Awaitable[GeneratedStory]]

AI_STORY_ID = "ai"


def _segment_key(index: int) -> str:
    return f"segment-{index}"


async def begin(prompt: str, generate: StorySource, title: str = "Untitled Story") -> AIStoryState:
    generated = await generate(prompt)
    scenario = to_scenario(generated, _segment_key(1), title)
    state = StoryState(story_id=AI_STORY_ID, current_scenario_key=scenario.key)
    return AIStoryState(
        title=title,
        story=story_engine.load_scenario(state, scenario),
        scenarios={scenario.key: scenario},
    )


def select(ai_state: AIStoryState, choice: Choice) -> AIStoryState:
    if ai_state.loading:
        raise InvalidSelectionError("The next scene is still loading")
    story = story_engine.select_choice(ai_state.story, choice)
    return ai_state.model_copy(update={"story": story, "error": None})


def mark_loading(ai_state: AIStoryState) -> AIStoryState:
    return ai_state.model_copy(update={"loading": True, "error": None})


async def advance(ai_state: AIStoryState, generate: StorySource) -> AIStoryState:
    """Fetch the scene that follows the pending choice.

    On a remote failure the state stays on the last good scene with the
    error recorded and the pending choice intact.
    """
    story = ai_state.story
    if story.pending_choice is None:
        return ai_state

    choice = story.choices[story.pending_choice]
    try:
        generated = await generate(choice.prompt or choice.text)
    except (RemoteRequestError, RemoteFormatError) as e:
        logger.warning(f"AI story could not continue: {e}")
        return ai_state.model_copy(update={"loading": False, "error": str(e)})

    scenario = to_scenario(generated, _segment_key(len(ai_state.scenarios) + 1), ai_state.title)
    scenarios = {**ai_state.scenarios, scenario.key: scenario}
    return ai_state.model_copy(
        update={
            "story": story_engine.load_scenario(story, scenario),
            "scenarios": scenarios,
            "loading": False,
            "error": None,
        }
    )


def go_back(ai_state: AIStoryState) -> AIStoryState:
    story = story_engine.go_back(ai_state.story, ai_state.scenarios)
    return ai_state.model_copy(update={"story": story, "loading": False, "error": None})


def build_transcript(
    ai_state: AIStoryState,
    title: str | None = None,
    tags: list[str] | None = None,
    rating: int = 0,
) -> SavedTranscript:
    story = ai_state.story
    segments: list[StorySegment] = []
    # History holds (body, consequence) pairs; the consequence of a generated
    # choice is its label, which is what the reader picked.
    entries = story.history
    for i, entry in enumerate(entries):
        if entry.is_consequence:
            continue
        choice_made = None
        if i + 1 < len(entries) and entries[i + 1].is_consequence:
            choice_made = entries[i + 1].text
        segments.append(StorySegment(text=entry.text, choice_made=choice_made))

    if not story.showing_consequence:
        segments.append(StorySegment(text=story.story_text, choice_made=None))

    now = datetime.now()
    return SavedTranscript(
        title=title or ai_state.title,
        segments=segments,
        created_at=ai_state.created_at,
        last_modified=now,
        tags=tags or [],
        rating=rating,
    )
