from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class Choice(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    consequence: str
    next_scenario: str | None = None
    prompt: str | None = None  # follow-up prompt, generated scenarios only

    @property
    def is_terminal(self) -> bool:
        return self.next_scenario is None


class Scenario(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    title: str
    story_text: str
    choices: list[Choice] = []

    @property
    def is_terminal(self) -> bool:
        return not self.choices


class ScenarioGraph(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    featured: bool = False
    start: str
    scenarios: dict[str, Scenario]


class StorySummary(BaseModel):
    id: str
    title: str
    description: str = ""
    featured: bool = False
    scenario_count: int
    user_authored: bool = False


class HistoryEntry(BaseModel):
    text: str
    is_consequence: bool = False


class NavigationFrame(BaseModel):
    scenario_key: str
    history_length: int


class StoryState(BaseModel):
    story_id: str
    current_scenario_key: str
    current_title: str = ""
    story_text: str = ""
    choices: list[Choice] = []
    showing_consequence: bool = False
    consequence_text: str = ""
    pending_choice: int | None = None
    ended: bool = False
    navigation_stack: list[NavigationFrame] = []
    history: list[HistoryEntry] = []


# ---------------------------------------------------------------------------
# Remote generation payload
# ---------------------------------------------------------------------------


class GeneratedChoice(BaseModel):
    text: str
    prompt: str


class GeneratedStory(BaseModel):
    story_text: str
    choices: list[GeneratedChoice]


class AIStoryState(BaseModel):
    title: str = "Untitled Story"
    story: StoryState
    scenarios: dict[str, Scenario] = {}
    loading: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class UserChoice(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    text: str = ""
    consequence: str = ""
    next_scenario_id: UUID | None = None


class UserScenario(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    title: str = ""
    story_text: str = ""
    choices: list[UserChoice] = []


class UserStory(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    title: str = ""
    description: str = ""
    scenarios: list[UserScenario] = []


class StorySegment(BaseModel):
    text: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    choice_made: str | None = None


class SavedTranscript(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    title: str = "Untitled Story"
    segments: list[StorySegment] = []
    created_at: datetime = Field(default_factory=datetime.now)
    last_modified: datetime = Field(default_factory=datetime.now)
    cover_image: str | None = "book.closed.fill"
    tags: list[str] = []
    rating: int = Field(default=0, ge=0, le=5)
