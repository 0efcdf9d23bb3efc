import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from openai import OpenAI, OpenAIError

load_dotenv()

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL = "gemini-2.5-flash"

_client: Optional[OpenAI] = None


class SentenceGenerationError(Exception):
    pass


def get_client() -> OpenAI:
    """Gemini through its OpenAI-compatible endpoint, created on first use."""
    global _client
    if _client is None:
        _client = OpenAI(
            api_key=os.getenv("GEMINI_API_KEY") or "missing-key",
            base_url=os.getenv("GEMINI_BASE_URL", GEMINI_BASE_URL),
        )
    return _client


def _model() -> str:
    return os.getenv("GEMINI_MODEL", DEFAULT_MODEL)


def build_prompt(words: List[str], history: List[str]) -> str:
    text = " ".join(words)
    history_string = "History:\n" + "\n".join(history) if history else ""
    return (
        "You are an AI assistant. Use the history for context.\n"
        f"{history_string}\n"
        "**Task:** Convert the user's new input into a natural sentence.\n"
        f'- Input: "{text}"\n'
        "Sentence:"
    )


def generate_sentence(words: List[str], history: List[str]) -> str:
    """
    Turn fingerspelled words into a natural sentence with Gemini.
    The returned text is opaque to the caller and is stored as-is.
    """
    prompt = build_prompt(words, history)
    try:
        response = get_client().chat.completions.create(
            model=_model(),
            messages=[
                {"role": "system", "content": "You are a helpful assistant."},
                {"role": "user", "content": prompt},
            ],
        )
    except OpenAIError as e:
        logger.error("❌ Gemini sentence generation failed: %s", e)
        raise SentenceGenerationError(str(e)) from e

    choice = response.choices[0]
    if hasattr(choice, "message") and hasattr(choice.message, "content"):
        return (choice.message.content or "").strip()
    return str(choice).strip()


def is_available() -> bool:
    """
    Check if Gemini API is reachable
    """
    try:
        get_client().chat.completions.create(
            model=_model(),
            messages=[{"role": "system", "content": "You are testing connectivity."},
                      {"role": "user", "content": "Hello"}]
        )
        return True
    except OpenAIError as e:
        logger.warning("⚠️ Gemini API not available: %s", e)
        return False
