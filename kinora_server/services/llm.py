import os
import logging
from time import perf_counter
from typing import AsyncGenerator, Dict, List, Optional

from dotenv import load_dotenv
from groq import AsyncGroq

# --- Configuration ---
load_dotenv()
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
GROQ_TIMEOUT_S = float(os.getenv("GROQ_TIMEOUT_S", "30.0"))
GROQ_MAX_TOKENS = int(os.getenv("GROQ_MAX_TOKENS", "1024"))
GROQ_TEMPERATURE = float(os.getenv("GROQ_TEMPERATURE", "0.7"))

# Only the most recent turns are forwarded verbatim.
HISTORY_KEEP_LAST_MESSAGES = int(os.getenv("HISTORY_KEEP_LAST_MESSAGES", "24"))

# "text" streams the reply as-is; "json" asks for one {"Answer", "Comments"} line.
CHAT_RESPONSE_FORMAT = os.getenv("CHAT_RESPONSE_FORMAT", "text").lower()

logger = logging.getLogger("kinora")

BASE_PROMPT = (
    "You are Kinora, a friendly and encouraging language learning companion. Your role is to:\n\n"
    "1. Help users practice conversational skills in their target language\n"
    "2. Gently correct grammar and pronunciation mistakes when they occur\n"
    "3. Provide natural, conversational responses that encourage further dialogue\n"
    "4. Adapt your language complexity to the user's proficiency level\n"
    "5. Occasionally introduce new vocabulary in context\n"
    "6. Use encouraging language to build confidence\n\n"
    "Keep your responses concise and natural, like a real conversation partner. "
    "If the user writes in their native language, respond in that language but encourage them "
    "to try in their target language.\n\n"
    "Always be patient, supportive, and make learning feel like a friendly chat rather than a formal lesson."
)

LEVEL_GUIDANCE = {
    "beginner": "Use short sentences, common words and simple tenses. Explain new words briefly.",
    "intermediate": "Use everyday vocabulary with some idioms. Correct recurring mistakes explicitly.",
    "advanced": "Speak naturally at native speed and register. Point out subtle or stylistic errors.",
}

JSON_FORMAT_INSTRUCTIONS = (
    "Reply with exactly one line of JSON and nothing else, shaped as "
    '{"Answer": "<your conversational reply in the target language>", '
    '"Comments": "<corrections or notes for the learner, written in their native language; '
    'empty string if there is nothing to correct>"}.'
)

_client: Optional[AsyncGroq] = None


def _get_client() -> AsyncGroq:
    global _client
    if _client is None:
        if not GROQ_API_KEY:
            raise RuntimeError("Groq API key is not configured. Please set GROQ_API_KEY in the .env file.")
        _client = AsyncGroq(api_key=GROQ_API_KEY, timeout=GROQ_TIMEOUT_S)
    return _client


def build_system_prompt(
    target_language: str = "English",
    native_language: str = "Korean",
    persona: Optional[Dict[str, str]] = None,
    response_format: str = CHAT_RESPONSE_FORMAT,
) -> str:
    """
    Compose the tutor system prompt from the learner's language pair and persona.
    Empty persona fields are left out.
    """
    persona = persona or {}
    sections = [
        BASE_PROMPT,
        f"The user is learning {target_language}. Their native language is {native_language}. "
        f"Converse in {target_language}; use {native_language} only for explanations and corrections.",
    ]

    level = (persona.get("proficiencyLevel") or "beginner").lower()
    about = [f"Proficiency level: {level}. {LEVEL_GUIDANCE.get(level, LEVEL_GUIDANCE['beginner'])}"]
    if (persona.get("name") or "").strip():
        about.append(f"Name: {persona['name'].strip()}")
    if (persona.get("learningGoals") or "").strip():
        about.append(f"Learning goals: {persona['learningGoals'].strip()}")
    if (persona.get("customContext") or "").strip():
        about.append(f"Additional context: {persona['customContext'].strip()}")
    sections.append("About the learner:\n" + "\n".join(f"- {line}" for line in about))

    if response_format == "json":
        sections.append(JSON_FORMAT_INSTRUCTIONS)
    return "\n\n".join(sections)


def build_messages(
    history: List[Dict[str, str]],
    system_prompt: str,
) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    # Keep recent turns verbatim; anything older is dropped.
    messages.extend(
        {"role": m["role"], "content": m["content"]}
        for m in history[-HISTORY_KEEP_LAST_MESSAGES:]
    )
    return messages


async def open_chat_stream(
    history: List[Dict[str, str]],
    system_prompt: str,
):
    """
    Start a streaming completion. Raises if the provider rejects the request,
    so callers can fail before any bytes are sent.
    """
    logger.info(f"Querying Groq (model={GROQ_MODEL}, messages={len(history)})...")
    return await _get_client().chat.completions.create(
        messages=build_messages(history, system_prompt),
        model=GROQ_MODEL,
        max_tokens=GROQ_MAX_TOKENS,
        temperature=GROQ_TEMPERATURE,
        stream=True,
    )


async def iter_stream_text(stream) -> AsyncGenerator[str, None]:
    """
    Yield text deltas as they arrive. Errors after the first byte cannot change
    the response status, so they are logged and end the stream.
    """
    llm_start = perf_counter()
    first_token_ms = None
    total_chars = 0
    try:
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = getattr(chunk.choices[0], "delta", None)
            content = getattr(delta, "content", None) if delta else None
            if content:
                if first_token_ms is None:
                    first_token_ms = (perf_counter() - llm_start) * 1000
                total_chars += len(content)
                yield content
    except Exception as e:
        elapsed = (perf_counter() - llm_start) * 1000
        logger.error(f"Groq stream failed after {elapsed:.1f} ms: {e}")
        return

    elapsed = (perf_counter() - llm_start) * 1000
    logger.info(
        f"LLM stream model={GROQ_MODEL} completed in {elapsed:.1f} ms "
        f"(first token {first_token_ms or 0:.1f} ms, {total_chars} chars)."
    )


if __name__ == '__main__':
    import asyncio

    async def _demo():
        prompt = build_system_prompt("Spanish", "English", {"proficiencyLevel": "beginner"})
        stream = await open_chat_stream([{"role": "user", "content": "Hola, ¿cómo estás?"}], prompt)
        async for text in iter_stream_text(stream):
            print(text, end="", flush=True)
        print()

    asyncio.run(_demo())
