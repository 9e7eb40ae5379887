"""
Conversation summarization using Gemini.

Turns a logged conversation into one short sentence the patient can read
on the AR overlay. Every failure (no key, rate limiting, network errors,
odd responses) falls back to a local summary, so callers never see an error.
"""

import logging
import re
from typing import Optional

import httpx

from config import Settings, get_settings

logger = logging.getLogger(__name__)

PROMPT = """Summarize this conversation in ONE sentence for a dementia patient's memory aid.

REQUIRED FORMAT: "Talked about [specific topic] and [key detail]"

EXAMPLE INPUT: "Hey are you going to the hackathon? I need a backend dev for my team."
EXAMPLE OUTPUT: "Talked about joining the hackathon this weekend and finding a backend developer"

EXAMPLE INPUT: "Mom's roses are beautiful this year! The red ones are my favorite."
EXAMPLE OUTPUT: "Talked about Mom's garden and her beautiful red roses"

NOW SUMMARIZE THIS CONVERSATION:
{text}

OUTPUT (must be 8-15 words, must mention the main topic):"""

TOPIC_WORDS = [
    "hackathon", "birthday", "wedding", "trip", "vacation", "work", "project",
    "school", "doctor", "hospital", "dinner", "lunch", "party", "game", "movie",
]


def create_fallback_summary(text: str) -> str:
    """Simple local summary used whenever the AI is unavailable."""
    lower_text = text.lower()
    for topic in TOPIC_WORDS:
        if topic in lower_text:
            return f"Talked about {topic}"

    words = text.split()[:8]
    if len(words) < 3:
        return "Had a conversation recently"
    return " ".join(words) + "..."


def _endpoint(settings: Settings) -> str:
    return f"{settings.gemini_url}/{settings.gemini_model}:generateContent"


def _request_body(text: str) -> dict:
    return {
        "contents": [{"parts": [{"text": PROMPT.format(text=text)}]}],
        "generationConfig": {
            "temperature": 0.5,
            "maxOutputTokens": 100,
        },
    }


def extract_summary(data: dict) -> Optional[str]:
    """
    Pull the generated text out of a Gemini response.
    Handles the shapes returned by different API versions.
    """
    candidates = data.get("candidates") or [{}]
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    parts = (first.get("content") or {}).get("parts") or [{}]

    for value in (
        parts[0].get("text"),
        first.get("text"),
        data.get("text"),
        data.get("response"),
    ):
        if isinstance(value, str) and value.strip():
            return re.sub(r'^["\']|["\']$', "", value.strip()).strip()
    return None


def _handle_response(response: httpx.Response, text: str) -> str:
    if response.status_code == 429:
        logger.warning("Gemini API rate limited. Using fallback summary.")
        return create_fallback_summary(text)

    if response.status_code != 200:
        logger.warning("Gemini API error: %s", response.status_code)
        return create_fallback_summary(text)

    try:
        data = response.json()
    except ValueError:
        logger.warning("Gemini returned invalid JSON, using fallback")
        return create_fallback_summary(text)

    logger.debug("Gemini response: %s", data)
    try:
        summary = extract_summary(data)
    except (AttributeError, TypeError, KeyError, IndexError) as e:
        logger.warning("Unexpected Gemini response shape: %s", e)
        summary = None
    if not summary:
        logger.warning("Could not extract summary from response, using fallback")
        return create_fallback_summary(text)
    return summary


def summarize(
    text: str,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> str:
    """
    Summarize a conversation into one friendly sentence.

    Args:
        text: Raw conversation text
        settings: Overrides the global settings
        transport: Custom httpx transport (tests)

    Returns:
        The AI summary, or the local fallback summary
    """
    settings = settings or get_settings()
    if not settings.gemini_api_key:
        logger.warning("Gemini API key not configured. Using fallback summary.")
        return create_fallback_summary(text)

    try:
        with httpx.Client(transport=transport, timeout=settings.summarizer_timeout) as client:
            response = client.post(
                _endpoint(settings),
                params={"key": settings.gemini_api_key},
                json=_request_body(text),
            )
    except httpx.HTTPError as e:
        logger.warning("Error summarizing conversation: %s", e)
        return create_fallback_summary(text)

    return _handle_response(response, text)


async def summarize_async(
    text: str,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Async version of summarize."""
    settings = settings or get_settings()
    if not settings.gemini_api_key:
        logger.warning("Gemini API key not configured. Using fallback summary.")
        return create_fallback_summary(text)

    try:
        async with httpx.AsyncClient(transport=transport, timeout=settings.summarizer_timeout) as client:
            response = await client.post(
                _endpoint(settings),
                params={"key": settings.gemini_api_key},
                json=_request_body(text),
            )
    except httpx.HTTPError as e:
        logger.warning("Error summarizing conversation: %s", e)
        return create_fallback_summary(text)

    return _handle_response(response, text)


async def check_connection(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Check whether the Gemini API is configured and answering."""
    settings = settings or get_settings()
    if not settings.gemini_api_key:
        return False

    try:
        async with httpx.AsyncClient(transport=transport, timeout=settings.summarizer_timeout) as client:
            response = await client.post(
                _endpoint(settings),
                params={"key": settings.gemini_api_key},
                json={
                    "contents": [{"parts": [{"text": 'Say "OK" if you can read this.'}]}],
                    "generationConfig": {"maxOutputTokens": 10},
                },
            )
        return response.is_success
    except httpx.HTTPError:
        return False
