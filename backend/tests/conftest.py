import os

# Set dummy API key before any storytime module imports to prevent genai.Client() from failing
os.environ.setdefault("GEMINI_API_KEY", "test-dummy-key-for-unit-tests")

import json
from unittest.mock import MagicMock

import pytest

from storytime import story_engine
from storytime.models import GeneratedStory
from storytime.repository import StoryRepository


@pytest.fixture(scope="session")
def library():
    return story_engine.load_library()


@pytest.fixture
def haven(library):
    return library["buried_haven"]


@pytest.fixture
def dragons(library):
    return library["dragons_quest"]


@pytest.fixture
def sample_story_json():
    return {
        "story_text": "The lighthouse keeper finds a letter sealed with black wax.",
        "choices": [
            {"text": "Break the seal", "prompt": "The keeper opens the letter at midnight."},
            {"text": "Burn the letter", "prompt": "The keeper burns the letter and the sea answers."},
        ],
    }


@pytest.fixture
def sample_story(sample_story_json):
    return GeneratedStory(**sample_story_json)


@pytest.fixture
def mock_gemini_story_response(sample_story_json):
    mock_resp = MagicMock()
    mock_resp.text = json.dumps(sample_story_json)
    return mock_resp


@pytest.fixture
def repository(tmp_path):
    return StoryRepository(tmp_path / "data")
