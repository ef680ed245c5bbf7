from uuid import UUID

from storytime.errors import AuthoringError, GraphIntegrityError
from storytime.models import Choice, Scenario, ScenarioGraph, UserChoice, UserScenario, UserStory
from storytime.story_engine import check_graph


def _require(value: str, field: str) -> str:
    if not value.strip():
        raise AuthoringError(f"{field} must not be empty")
    return value


def create_story(title: str, description: str = "") -> UserStory:
    return UserStory(title=_require(title, "Story title"), description=description)


def add_scenario(story: UserStory, title: str, story_text: str) -> tuple[UserStory, UserScenario]:
    scenario = UserScenario(
        title=_require(title, "Scenario title"),
        story_text=_require(story_text, "Story text"),
    )
    return story.model_copy(update={"scenarios": story.scenarios + [scenario]}), scenario


def add_choice(
    story: UserStory,
    scenario_id: UUID,
    text: str,
    consequence: str,
    next_scenario_id: UUID | None = None,
) -> tuple[UserStory, UserChoice]:
    known = {s.id for s in story.scenarios}
    if scenario_id not in known:
        raise AuthoringError(f"Scenario '{scenario_id}' is not part of story '{story.title}'")
    if next_scenario_id is not None and next_scenario_id not in known:
        raise AuthoringError(f"Next scenario '{next_scenario_id}' is not part of story '{story.title}'")

    choice = UserChoice(
        text=_require(text, "Choice text"),
        consequence=_require(consequence, "Consequence"),
        next_scenario_id=next_scenario_id,
    )
    scenarios = [
        s.model_copy(update={"choices": s.choices + [choice]}) if s.id == scenario_id else s
        for s in story.scenarios
    ]
    return story.model_copy(update={"scenarios": scenarios}), choice


def compile_story(story: UserStory) -> ScenarioGraph:
    """Turn a user-authored story into a playable graph rooted at its first scenario."""
    if not story.scenarios:
        raise GraphIntegrityError(f"Story '{story.title}' has no scenarios")

    scenarios = {
        str(s.id): Scenario(
            key=str(s.id),
            title=s.title,
            story_text=s.story_text,
            choices=[
                Choice(
                    text=c.text,
                    consequence=c.consequence,
                    next_scenario=str(c.next_scenario_id) if c.next_scenario_id else None,
                )
                for c in s.choices
            ],
        )
        for s in story.scenarios
    }
    graph = ScenarioGraph(
        id=str(story.id),
        title=story.title,
        description=story.description,
        start=str(story.scenarios[0].id),
        scenarios=scenarios,
    )
    return check_graph(graph)
