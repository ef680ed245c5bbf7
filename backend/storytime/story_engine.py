import json
import logging
from collections.abc import Mapping
from pathlib import Path

from pydantic import ValidationError

from storytime.errors import GraphIntegrityError, InvalidSelectionError, NoPreviousScenarioError
from storytime.models import (
    Choice,
    HistoryEntry,
    NavigationFrame,
    Scenario,
    ScenarioGraph,
    StoryState,
)

logger = logging.getLogger(__name__)

BUILTIN_STORY_DIR = Path(__file__).parent / "stories"


# ---------------------------------------------------------------------------
# Graph loading
# ---------------------------------------------------------------------------


def validate_graph(graph: ScenarioGraph) -> list[str]:
    problems: list[str] = []
    if graph.start not in graph.scenarios:
        problems.append(f"start scenario '{graph.start}' is not defined")
    for key, scenario in graph.scenarios.items():
        if scenario.key != key:
            problems.append(f"scenario '{key}' declares mismatched key '{scenario.key}'")
        for choice in scenario.choices:
            if choice.next_scenario is not None and choice.next_scenario not in graph.scenarios:
                problems.append(
                    f"choice '{choice.text}' in '{key}' points to missing scenario '{choice.next_scenario}'"
                )
    return problems


def check_graph(graph: ScenarioGraph) -> ScenarioGraph:
    problems = validate_graph(graph)
    if problems:
        raise GraphIntegrityError(
            f"Story '{graph.id}' failed validation: {'; '.join(problems)}", problems
        )
    return graph


def load_graph(path: str | Path) -> ScenarioGraph:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if "scenarios" not in data:
        raise GraphIntegrityError(f"Invalid story file at '{path}': missing 'scenarios' key")
    try:
        graph = ScenarioGraph(**data)
    except ValidationError as e:
        raise GraphIntegrityError(f"Invalid story file at '{path}': {e}") from e
    return check_graph(graph)


def load_library(directory: str | Path = BUILTIN_STORY_DIR) -> dict[str, ScenarioGraph]:
    library: dict[str, ScenarioGraph] = {}
    for path in sorted(Path(directory).glob("*.json")):
        graph = load_graph(path)
        if graph.id in library:
            raise GraphIntegrityError(f"Duplicate story id '{graph.id}' in '{path}'")
        library[graph.id] = graph
    logger.info(f"Loaded {len(library)} stories from {directory}")
    return library


def get_scenario(scenarios: Mapping[str, Scenario], key: str) -> Scenario:
    if key not in scenarios:
        raise GraphIntegrityError(f"Scenario '{key}' not found in story data")
    return scenarios[key]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def start(graph: ScenarioGraph) -> StoryState:
    state = StoryState(story_id=graph.id, current_scenario_key=graph.start)
    return load_scenario(state, get_scenario(graph.scenarios, graph.start))


def load_scenario(state: StoryState, scenario: Scenario) -> StoryState:
    return state.model_copy(
        update={
            "current_scenario_key": scenario.key,
            "current_title": scenario.title,
            "story_text": scenario.story_text,
            "choices": list(scenario.choices),
            "showing_consequence": False,
            "consequence_text": "",
            "pending_choice": None,
            "ended": False,
        }
    )


def select_choice(state: StoryState, choice: Choice) -> StoryState:
    """Reveal a choice's consequence and record the step for undo.

    The transition to the next scenario is deferred to ``commit`` so the
    caller owns the pacing between the two phases.
    """
    if state.ended:
        raise InvalidSelectionError("The story has ended")
    if state.showing_consequence:
        raise InvalidSelectionError("A choice is already being resolved")
    if choice not in state.choices:
        raise InvalidSelectionError(f"Choice '{choice.text}' is not available here")

    frame = NavigationFrame(
        scenario_key=state.current_scenario_key,
        history_length=len(state.history),
    )
    history = state.history + [
        HistoryEntry(text=state.story_text, is_consequence=False),
        HistoryEntry(text=choice.consequence, is_consequence=True),
    ]
    return state.model_copy(
        update={
            "showing_consequence": True,
            "consequence_text": choice.consequence,
            "pending_choice": state.choices.index(choice),
            "navigation_stack": state.navigation_stack + [frame],
            "history": history,
        }
    )


def commit(state: StoryState, scenarios: Mapping[str, Scenario]) -> StoryState:
    if state.pending_choice is None:
        return state

    choice = state.choices[state.pending_choice]
    if choice.next_scenario is not None:
        return load_scenario(state, get_scenario(scenarios, choice.next_scenario))

    # Terminal choice: the consequence stays on screen, nothing else loads
    return state.model_copy(update={"choices": [], "pending_choice": None, "ended": True})


def go_back(state: StoryState, scenarios: Mapping[str, Scenario]) -> StoryState:
    if not state.navigation_stack:
        raise NoPreviousScenarioError("No previous scenario")

    frame = state.navigation_stack[-1]
    rewound = state.model_copy(
        update={
            "navigation_stack": state.navigation_stack[:-1],
            "history": state.history[: frame.history_length],
        }
    )
    return load_scenario(rewound, get_scenario(scenarios, frame.scenario_key))


def choice_at(state: StoryState, index: int) -> Choice:
    if not 0 <= index < len(state.choices):
        raise InvalidSelectionError(f"No choice at position {index}")
    return state.choices[index]
