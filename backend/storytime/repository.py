import json
import logging
import os
import shutil
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel, TypeAdapter, ValidationError

from storytime.errors import PersistenceError
from storytime.models import SavedTranscript, UserStory

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.getenv("STORYTIME_DATA_DIR", "data")

USER_STORIES_FILE = "user_stories.json"
TRANSCRIPTS_FILE = "saved_stories.json"

_user_stories_adapter = TypeAdapter(list[UserStory])
_transcripts_adapter = TypeAdapter(list[SavedTranscript])


class StoryRepository:
    """Durable JSON stores for user-authored stories and saved AI transcripts.

    Each store is a single file rewritten as a whole on every save. A store
    that is missing or unreadable loads as empty, and records that fail
    validation are skipped. Either way the file is first copied to
    "<name>.bak" so the next save cannot lose it.
    """

    def __init__(self, data_dir: str | Path = DEFAULT_DATA_DIR) -> None:
        self.data_dir = Path(data_dir)

    def _read(self, filename: str, model: type[BaseModel]) -> list:
        path = self.data_dir / filename
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_bytes())
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load '{path}', treating store as empty: {e}")
            self._back_up(path)
            return []
        if not isinstance(data, list):
            logger.warning(f"'{path}' does not hold a list, treating store as empty")
            self._back_up(path)
            return []

        records = []
        for position, item in enumerate(data):
            try:
                records.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable record {position} in '{path}': {e}")
        if len(records) < len(data):
            self._back_up(path)
        return records

    @staticmethod
    def _back_up(path: Path) -> None:
        # Copy beside the store before the next save rewrites it
        backup = path.with_name(path.name + ".bak")
        try:
            shutil.copyfile(path, backup)
        except OSError as e:
            logger.error(f"Could not back up '{path}': {e}")
            return
        logger.warning(f"Copied unreadable store '{path}' to '{backup}'")

    def _write(self, filename: str, adapter: TypeAdapter, records: list) -> None:
        path = self.data_dir / filename
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(adapter.dump_json(records, indent=2))
            tmp.replace(path)
        except OSError as e:
            logger.error(f"Could not save '{path}': {e}")
            raise PersistenceError(f"Could not save {filename}: {e}") from e

    # -- user-authored stories ------------------------------------------------

    def load_user_stories(self) -> list[UserStory]:
        return self._read(USER_STORIES_FILE, UserStory)

    def save_user_stories(self, stories: list[UserStory]) -> None:
        self._write(USER_STORIES_FILE, _user_stories_adapter, stories)

    def get_user_story(self, story_id: UUID) -> UserStory | None:
        return next((s for s in self.load_user_stories() if s.id == story_id), None)

    def add_user_story(self, story: UserStory) -> UserStory:
        self.save_user_stories(self.load_user_stories() + [story])
        return story

    def replace_user_story(self, story: UserStory) -> UserStory:
        stories = self.load_user_stories()
        if not any(s.id == story.id for s in stories):
            raise KeyError(f"User story '{story.id}' not found")
        self.save_user_stories([story if s.id == story.id else s for s in stories])
        return story

    def delete_user_story(self, story_id: UUID) -> bool:
        stories = self.load_user_stories()
        remaining = [s for s in stories if s.id != story_id]
        if len(remaining) == len(stories):
            return False
        self.save_user_stories(remaining)
        return True

    # -- saved AI transcripts -------------------------------------------------

    def load_transcripts(self) -> list[SavedTranscript]:
        return self._read(TRANSCRIPTS_FILE, SavedTranscript)

    def save_transcripts(self, transcripts: list[SavedTranscript]) -> None:
        self._write(TRANSCRIPTS_FILE, _transcripts_adapter, transcripts)

    def add_transcript(self, transcript: SavedTranscript) -> SavedTranscript:
        self.save_transcripts(self.load_transcripts() + [transcript])
        return transcript

    def delete_transcript(self, transcript_id: UUID) -> bool:
        transcripts = self.load_transcripts()
        remaining = [t for t in transcripts if t.id != transcript_id]
        if len(remaining) == len(transcripts):
            return False
        self.save_transcripts(remaining)
        return True
