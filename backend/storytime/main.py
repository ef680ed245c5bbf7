import json
import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

from dotenv import load_dotenv

# Must run before storytime modules are imported: genai.Client() reads the API key at instantiation
load_dotenv()

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from storytime import ai_story, authoring, story_engine
from storytime.errors import (
    AuthoringError,
    GraphIntegrityError,
    InvalidSelectionError,
    NoPreviousScenarioError,
    PersistenceError,
    RemoteFormatError,
    RemoteRequestError,
)
from storytime.models import (
    SavedTranscript,
    ScenarioGraph,
    StoryState,
    StorySummary,
    UserChoice,
    UserScenario,
    UserStory,
)
from storytime.repository import StoryRepository
from storytime.session import AIStorySession, ReaderSession, SessionRegistry, StorySession

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level globals
# ---------------------------------------------------------------------------
library: dict[str, ScenarioGraph] = {}
repository = StoryRepository()
sessions = SessionRegistry()


# ---------------------------------------------------------------------------
# Lifespan: load the built-in stories once at startup
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    global library
    library = story_engine.load_library()
    yield
    sessions.close_all()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="StoryTime API", lifespan=lifespan)

_allowed_origins = os.getenv(
    "CORS_ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["content-type"],
)


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------
class OpenSessionRequest(BaseModel):
    story_id: str


class OpenAISessionRequest(BaseModel):
    prompt: str = Field(min_length=1)
    title: str = "Untitled Story"


class ChooseRequest(BaseModel):
    index: int


class SessionView(BaseModel):
    session_id: str
    state: StoryState
    commit_pending: bool = False
    loading: bool = False
    error: str | None = None


class SaveTranscriptRequest(BaseModel):
    title: str | None = None
    tags: list[str] = []
    rating: int = Field(default=0, ge=0, le=5)


class NewStoryRequest(BaseModel):
    title: str
    description: str = ""


class NewScenarioRequest(BaseModel):
    title: str
    story_text: str


class NewChoiceRequest(BaseModel):
    text: str
    consequence: str
    next_scenario_id: UUID | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _view(session: ReaderSession) -> SessionView:
    ai_state = getattr(session, "ai_state", None)
    return SessionView(
        session_id=session.session_id,
        state=session.story,
        commit_pending=session.commit_pending,
        loading=ai_state.loading if ai_state else False,
        error=ai_state.error if ai_state else None,
    )


def _resolve_graph(story_id: str) -> ScenarioGraph:
    if story_id in library:
        return library[story_id]
    try:
        user_story = repository.get_user_story(UUID(story_id))
    except ValueError:
        user_story = None
    if user_story is None:
        raise HTTPException(status_code=404, detail=f"Story '{story_id}' not found")
    try:
        return authoring.compile_story(user_story)
    except GraphIntegrityError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _session(session_id: str) -> ReaderSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session


def _ai_session(session_id: str) -> AIStorySession:
    session = _session(session_id)
    if not isinstance(session, AIStorySession):
        raise HTTPException(status_code=404, detail=f"AI session '{session_id}' not found")
    return session


def _user_story(story_id: UUID) -> UserStory:
    story = repository.get_user_story(story_id)
    if story is None:
        raise HTTPException(status_code=404, detail=f"User story '{story_id}' not found")
    return story


def _persist(fn, *args):
    try:
        return fn(*args)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/stories")
async def list_stories() -> list[StorySummary]:
    summaries = [
        StorySummary(
            id=g.id,
            title=g.title,
            description=g.description,
            featured=g.featured,
            scenario_count=len(g.scenarios),
        )
        for g in library.values()
    ]
    summaries += [
        StorySummary(
            id=str(s.id),
            title=s.title,
            description=s.description,
            scenario_count=len(s.scenarios),
            user_authored=True,
        )
        for s in repository.load_user_stories()
    ]
    return summaries


@app.get("/api/stories/{story_id}")
async def get_story(story_id: str) -> ScenarioGraph:
    return _resolve_graph(story_id)


# ---------------------------------------------------------------------------
# Reading sessions
# ---------------------------------------------------------------------------


@app.post("/api/sessions")
async def open_session(body: OpenSessionRequest) -> SessionView:
    graph = _resolve_graph(body.story_id)
    session = sessions.add(StorySession(sessions.new_id(), graph))
    logger.info(f"Opened session {session.session_id} on '{graph.id}'")
    return _view(session)


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str) -> SessionView:
    return _view(_session(session_id))


@app.post("/api/sessions/{session_id}/choose")
async def choose(session_id: str, body: ChooseRequest) -> SessionView:
    session = _session(session_id)
    try:
        await session.choose(body.index)
    except InvalidSelectionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _view(session)


@app.post("/api/sessions/{session_id}/commit")
async def commit(session_id: str) -> SessionView:
    session = _session(session_id)
    await session.commit_now()
    return _view(session)


@app.post("/api/sessions/{session_id}/back")
async def back(session_id: str) -> SessionView:
    session = _session(session_id)
    try:
        await session.back()
    except NoPreviousScenarioError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _view(session)


@app.delete("/api/sessions/{session_id}")
async def close_session(session_id: str) -> dict:
    if not sessions.close(session_id):
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return {"closed": session_id}


# ---------------------------------------------------------------------------
# AI stories
# ---------------------------------------------------------------------------


@app.post("/api/ai/sessions")
async def open_ai_session(body: OpenAISessionRequest) -> SessionView:
    try:
        session = await AIStorySession.open(sessions.new_id(), body.prompt, title=body.title)
    except (RemoteRequestError, RemoteFormatError) as e:
        raise HTTPException(status_code=502, detail=str(e))
    sessions.add(session)
    return _view(session)


@app.post("/api/ai/sessions/{session_id}/save")
async def save_ai_session(session_id: str, body: SaveTranscriptRequest) -> SavedTranscript:
    session = _ai_session(session_id)
    transcript = ai_story.build_transcript(session.ai_state, body.title, body.tags, body.rating)
    return _persist(repository.add_transcript, transcript)


@app.get("/api/transcripts")
async def list_transcripts() -> list[SavedTranscript]:
    return repository.load_transcripts()


@app.delete("/api/transcripts/{transcript_id}")
async def delete_transcript(transcript_id: UUID) -> dict:
    if not _persist(repository.delete_transcript, transcript_id):
        raise HTTPException(status_code=404, detail=f"Transcript '{transcript_id}' not found")
    return {"deleted": str(transcript_id)}


# ---------------------------------------------------------------------------
# User-authored stories
# ---------------------------------------------------------------------------


@app.get("/api/user-stories")
async def list_user_stories() -> list[UserStory]:
    return repository.load_user_stories()


@app.post("/api/user-stories")
async def create_user_story(body: NewStoryRequest) -> UserStory:
    try:
        story = authoring.create_story(body.title, body.description)
    except AuthoringError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _persist(repository.add_user_story, story)


@app.delete("/api/user-stories/{story_id}")
async def delete_user_story(story_id: UUID) -> dict:
    if not _persist(repository.delete_user_story, story_id):
        raise HTTPException(status_code=404, detail=f"User story '{story_id}' not found")
    return {"deleted": str(story_id)}


@app.post("/api/user-stories/{story_id}/scenarios")
async def add_user_scenario(story_id: UUID, body: NewScenarioRequest) -> UserScenario:
    story = _user_story(story_id)
    try:
        story, scenario = authoring.add_scenario(story, body.title, body.story_text)
    except AuthoringError as e:
        raise HTTPException(status_code=422, detail=str(e))
    _persist(repository.replace_user_story, story)
    return scenario


@app.post("/api/user-stories/{story_id}/scenarios/{scenario_id}/choices")
async def add_user_choice(story_id: UUID, scenario_id: UUID, body: NewChoiceRequest) -> UserChoice:
    story = _user_story(story_id)
    try:
        story, choice = authoring.add_choice(
            story, scenario_id, body.text, body.consequence, body.next_scenario_id
        )
    except AuthoringError as e:
        raise HTTPException(status_code=422, detail=str(e))
    _persist(repository.replace_user_story, story)
    return choice


# ---------------------------------------------------------------------------
# WebSocket /ws/session
# ---------------------------------------------------------------------------


async def _send_state(websocket: WebSocket, session: ReaderSession) -> None:
    await websocket.send_text(
        json.dumps({"type": "state", "session": _view(session).model_dump(mode="json")})
    )


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_text(json.dumps({"type": "error", "message": message}))


@app.websocket("/ws/session")
async def ws_session(websocket: WebSocket) -> None:
    await websocket.accept()

    session: ReaderSession | None = None

    async def push(changed: ReaderSession) -> None:
        await _send_state(websocket, changed)

    try:
        async for raw in websocket.iter_text():
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("WS received non-JSON message, ignoring")
                continue

            msg_type = msg.get("type", "")

            try:
                # ------------------------------------------------------------
                # "start": open a built-in/user story, or an AI story from a prompt
                # ------------------------------------------------------------
                if msg_type == "start":
                    if session is not None:
                        sessions.close(session.session_id)
                        session = None
                    if msg.get("prompt"):
                        session = await AIStorySession.open(
                            sessions.new_id(),
                            msg["prompt"],
                            title=msg.get("title", "Untitled Story"),
                            on_change=push,
                        )
                    else:
                        graph = _resolve_graph(msg.get("story_id", ""))
                        session = StorySession(sessions.new_id(), graph, on_change=push)
                    sessions.add(session)
                    await _send_state(websocket, session)

                elif session is None:
                    await _send_error(websocket, "No story is open")

                # ------------------------------------------------------------
                # "choose": reveal the consequence; the commit follows on a timer
                # ------------------------------------------------------------
                elif msg_type == "choose":
                    await session.choose(int(msg.get("index", -1)))

                elif msg_type == "commit":
                    await session.commit_now()

                # ------------------------------------------------------------
                # "back": undo the last step, or leave the story at the start
                # ------------------------------------------------------------
                elif msg_type == "back":
                    try:
                        await session.back()
                    except NoPreviousScenarioError:
                        sessions.close(session.session_id)
                        session = None
                        await websocket.send_text(json.dumps({"type": "exit"}))

            except (ValueError, RemoteRequestError) as e:
                await _send_error(websocket, str(e))
            except HTTPException as e:
                await _send_error(websocket, str(e.detail))

    except WebSocketDisconnect:
        logger.info(f"WS session {id(websocket)} disconnected")
    except Exception as e:
        logger.error(f"WS session {id(websocket)} error: {e}", exc_info=True)
        try:
            await _send_error(websocket, "Internal server error")
        except Exception as send_err:
            logger.warning(f"WS session {id(websocket)} failed to send error: {send_err}")
    finally:
        if session is not None:
            sessions.close(session.session_id)
