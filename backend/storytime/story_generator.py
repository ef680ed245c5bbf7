import logging
import os

from google import genai
from google.genai import types
from pydantic import ValidationError

from storytime.errors import RemoteFormatError, RemoteRequestError
from storytime.models import Choice, GeneratedStory, Scenario

logger = logging.getLogger(__name__)

client = genai.Client()

_MODEL = os.getenv("STORYTIME_MODEL", "gemini-2.5-flash")

_PROMPT_TEMPLATE = """Generate a short interactive story segment based on this prompt: {prompt}
Format the response exactly like this:
{{
    "story_text": "The story segment text here...",
    "choices": [
        {{
            "text": "First choice text",
            "prompt": "Continuation prompt for this choice"
        }},
        {{
            "text": "Second choice text",
            "prompt": "Continuation prompt for this choice"
        }}
    ]
}}
Make the story engaging and the choices meaningful. Each choice should lead to a different direction.
Offer two or three choices. Return ONLY the JSON object."""


def _setup_phoenix() -> None:
    """Register Gemini spans with Phoenix tracing when a collector is configured."""
    endpoint = os.environ.get("PHOENIX_COLLECTOR_ENDPOINT")
    if not endpoint:
        return
    try:
        from openinference.instrumentation.google_genai import GoogleGenAIInstrumentor
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk import trace as trace_sdk
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        tracer_provider = trace_sdk.TracerProvider()
        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
        )
        GoogleGenAIInstrumentor().instrument(tracer_provider=tracer_provider)
        logger.info("Phoenix tracing enabled → %s", endpoint)
    except Exception as exc:
        logger.warning("Phoenix tracing unavailable: %s", exc)


_setup_phoenix()


def parse_story(raw: str | None) -> GeneratedStory:
    if raw is None or not raw.strip():
        raise RemoteFormatError("Story service returned an empty response")
    # Strip markdown fences if the model wraps JSON in ```json ... ```
    cleaned = raw.strip().removeprefix("```json").removeprefix("```").removesuffix("```").strip()
    try:
        story = GeneratedStory.model_validate_json(cleaned)
    except ValidationError as e:
        raise RemoteFormatError(f"Story service returned malformed story: {e}", raw_snippet=cleaned[:200]) from e
    if not 2 <= len(story.choices) <= 3:
        logger.warning(f"Story service returned {len(story.choices)} choices, expected 2-3")
    return story


async def generate_story(prompt: str) -> GeneratedStory:
    """Ask the generation service for exactly one new story segment.

    Single attempt; the caller decides whether to re-prompt.
    """
    try:
        response = await client.aio.models.generate_content(
            model=_MODEL,
            contents=_PROMPT_TEMPLATE.format(prompt=prompt),
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                temperature=0.9,
                thinking_config=types.ThinkingConfig(thinking_budget=0),
            ),
        )
    except Exception as e:
        logger.error(f"Story generation request failed: {e}")
        raise RemoteRequestError(f"Story service unavailable: {e}") from e

    try:
        return parse_story(response.text)
    except RemoteFormatError as e:
        logger.error(f"Story generation returned unusable payload: {e}")
        raise


def to_scenario(story: GeneratedStory, key: str, title: str = "") -> Scenario:
    return Scenario(
        key=key,
        title=title,
        story_text=story.story_text,
        choices=[
            Choice(text=c.text, consequence=c.text, next_scenario=None, prompt=c.prompt)
            for c in story.choices
        ],
    )
