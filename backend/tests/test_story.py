import pytest

from storytime.errors import GraphIntegrityError, InvalidSelectionError, NoPreviousScenarioError
from storytime.models import Choice, Scenario, ScenarioGraph, StoryState
from storytime.story_engine import (
    choice_at,
    commit,
    get_scenario,
    go_back,
    load_scenario,
    select_choice,
    start,
)


def take(state: StoryState, graph: ScenarioGraph, text: str) -> StoryState:
    choice = next(c for c in state.choices if c.text == text)
    return commit(select_choice(state, choice), graph.scenarios)


def test_start_at_cleaning_ritual(haven):
    state = start(haven)
    assert state.current_scenario_key == "cleaning_ritual"
    assert state.current_title == "The Cleaning Ritual"
    assert state.story_text.startswith("The air recycler hums")
    assert state.history == []
    assert state.navigation_stack == []
    assert not state.showing_consequence


def test_get_scenario_invalid_key(haven):
    with pytest.raises(GraphIntegrityError):
        get_scenario(haven.scenarios, "nonexistent_scene_xyz")


def test_load_scenario_preserves_choice_order(haven):
    state = start(haven)
    for scenario in haven.scenarios.values():
        state = load_scenario(state, scenario)
        assert [c.text for c in state.choices] == [c.text for c in scenario.choices]
        assert state.current_scenario_key == scenario.key
        assert not state.showing_consequence


def test_select_reveals_consequence_before_transition(haven):
    state = start(haven)
    state = select_choice(state, state.choices[0])
    assert state.showing_consequence
    assert state.consequence_text == "The lottery machine glitches, selecting you unexpectedly..."
    assert state.current_scenario_key == "cleaning_ritual"
    assert state.pending_choice == 0


def test_select_appends_body_and_consequence(haven):
    state = start(haven)
    body = state.story_text
    state = select_choice(state, state.choices[1])
    assert [(e.text, e.is_consequence) for e in state.history] == [
        (body, False),
        ("Your tampering triggers security protocols...", True),
    ]
    assert state.navigation_stack[-1].scenario_key == "cleaning_ritual"
    assert state.navigation_stack[-1].history_length == 0


def test_cleaning_ritual_to_ceremony_horror_to_surface_breach(haven):
    state = start(haven)
    state = take(state, haven, "Take your designated position")
    assert state.current_title == "Ceremony Horror"
    state = take(state, haven, "Follow mysterious heat signatures")
    assert state.current_title == "Surface Breach"
    assert state.history[-1].text == "You discover a surface settlement watching The Haven..."


def test_select_rejected_while_showing_consequence(haven):
    state = start(haven)
    state = select_choice(state, state.choices[0])
    with pytest.raises(InvalidSelectionError):
        select_choice(state, state.choices[1])


def test_select_rejects_foreign_choice(haven):
    state = start(haven)
    foreign = Choice(text="Fly away", consequence="You cannot fly.", next_scenario=None)
    with pytest.raises(InvalidSelectionError):
        select_choice(state, foreign)


def test_choice_at_out_of_range(haven):
    state = start(haven)
    with pytest.raises(InvalidSelectionError):
        choice_at(state, 3)
    with pytest.raises(InvalidSelectionError):
        choice_at(state, -1)


def test_commit_twice_does_not_double_append(haven):
    state = start(haven)
    state = select_choice(state, state.choices[0])
    once = commit(state, haven.scenarios)
    twice = commit(once, haven.scenarios)
    assert len(twice.history) == len(once.history) == 2
    assert twice.current_scenario_key == once.current_scenario_key == "ceremony_horror"


def test_commit_without_selection_is_noop(haven):
    state = start(haven)
    assert commit(state, haven.scenarios) == state


def test_terminal_choice_ends_story(dragons):
    state = start(dragons)
    state = select_choice(state, choice_at(state, 1))
    assert state.choices[1].text == "Retreat silently"
    state = commit(state, dragons.scenarios)
    assert state.ended
    assert state.choices == []
    assert state.current_scenario_key == "dragon_awakening"
    assert state.consequence_text == "You back away into the twilight, safe for now."
    with pytest.raises(InvalidSelectionError):
        select_choice(state, Choice(text="Retreat silently", consequence="", next_scenario=None))


def test_go_back_on_empty_stack(haven):
    with pytest.raises(NoPreviousScenarioError):
        go_back(start(haven), haven.scenarios)


def test_go_back_during_consequence_returns_to_same_scene(haven):
    initial = start(haven)
    state = select_choice(initial, initial.choices[2])
    state = go_back(state, haven.scenarios)
    assert state.current_scenario_key == "cleaning_ritual"
    assert not state.showing_consequence
    assert state.pending_choice is None
    assert state.history == []
    assert state.navigation_stack == []


def test_go_back_is_inverse_of_forward_steps(haven):
    initial = start(haven)
    state = take(initial, haven, "Take your designated position")
    state = take(state, haven, "Follow mysterious heat signatures")
    state = take(state, haven, "Disable the dome reactors")
    assert state.current_title == "War for Truth"
    assert len(state.history) == 6
    assert len(state.navigation_stack) == 3

    state = go_back(state, haven.scenarios)
    assert state.current_title == "Surface Breach"
    assert len(state.history) == 4

    state = go_back(go_back(state, haven.scenarios), haven.scenarios)
    assert state.current_scenario_key == initial.current_scenario_key
    assert state.history == initial.history
    assert state.navigation_stack == initial.navigation_stack


def test_go_back_after_terminal_choice(dragons):
    state = start(dragons)
    state = take(state, dragons, "Retreat silently")
    assert state.ended
    state = go_back(state, dragons.scenarios)
    assert not state.ended
    assert [c.text for c in state.choices][1] == "Retreat silently"


def test_cycles_are_followed(library):
    graph = library["time_traveler"]
    state = start(graph)
    state = take(state, graph, "Step through to the past")
    state = take(state, graph, "Document everything")
    state = take(state, graph, "Seek the truth")
    assert state.current_title == "Time Paradox"
    assert len(state.navigation_stack) == 3


def test_load_scenario_clears_terminal_flag():
    state = StoryState(story_id="s", current_scenario_key="a", ended=True)
    scenario = Scenario(key="b", title="B", story_text="Bee.", choices=[])
    state = load_scenario(state, scenario)
    assert not state.ended
    assert state.choices == []
