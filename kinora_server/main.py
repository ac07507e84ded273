import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from .services import llm, stt, tts

load_dotenv()

logging.basicConfig(
    level=os.getenv("KINORA_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("kinora")

app = FastAPI(title="Kinora")

# Thread pool executor for CPU-bound Whisper inference
stt_executor = ThreadPoolExecutor(max_workers=int(os.getenv("STT_WORKERS", "1")), thread_name_prefix="stt")

TTS_CACHE_CONTROL = "public, max-age=86400"


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class PersonaPayload(BaseModel):
    name: str = ""
    learningGoals: str = ""
    proficiencyLevel: Literal["beginner", "intermediate", "advanced"] = "beginner"
    customContext: str = ""


class ChatRequest(BaseModel):
    messages: List[ChatTurn]
    targetLanguage: str = "English"
    nativeLanguage: str = "Korean"
    persona: Optional[PersonaPayload] = None


class TranscriptionRequest(BaseModel):
    # Validated by hand so a bad payload gets the same 400 as a missing one.
    audio: Any = None
    model: Optional[str] = None


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


@app.on_event("startup")
async def preload_models():
    """Optionally load the Whisper model on startup to avoid first-request latency."""
    model_size = os.getenv("STT_PRELOAD_MODEL", "").strip()
    if not model_size:
        return
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(stt_executor, stt.preload_stt, model_size)


@app.get("/health")
async def health():
    return {"status": "ok", "llm_model": llm.GROQ_MODEL, "stt_device": stt.DEVICE}


@app.post("/chat")
async def chat(payload: ChatRequest):
    """Streams the tutor's reply to the conversation as plain text."""
    try:
        system_prompt = llm.build_system_prompt(
            target_language=payload.targetLanguage,
            native_language=payload.nativeLanguage,
            persona=payload.persona.model_dump() if payload.persona else None,
        )
        history = [turn.model_dump() for turn in payload.messages]
        stream = await llm.open_chat_stream(history, system_prompt)
    except Exception as e:
        logger.exception(f"Chat API error: {e}")
        return _error("Failed to process chat request", 500)

    return StreamingResponse(
        llm.iter_stream_text(stream),
        media_type="text/plain; charset=utf-8",
    )


@app.post("/stt")
async def speech_to_text(payload: TranscriptionRequest):
    """Transcribes 16kHz float PCM with the selected Whisper model."""
    if payload.audio is None or not isinstance(payload.audio, list):
        return _error("No audio data provided", 400)

    model_size = payload.model or stt.DEFAULT_MODEL_SIZE
    try:
        loop = asyncio.get_running_loop()
        transcript = await loop.run_in_executor(stt_executor, stt.transcribe_pcm, payload.audio, model_size)
    except Exception as e:
        logger.exception(f"Whisper STT error: {e}")
        return _error("Failed to transcribe audio", 500, details=str(e))

    return {"transcript": transcript}


@app.get("/tts")
async def text_to_speech(
    text: Optional[str] = None,
    voice: str = Query(tts.DEFAULT_VOICE),
    rate: int = 0,
    pitch: int = 0,
):
    """Returns MP3 audio for `text`, cacheable for a day."""
    if not text or not text.strip():
        return _error("Text parameter is required", 400)

    try:
        audio = await tts.synthesize_speech(text, voice=voice, rate=rate, pitch=pitch)
    except Exception as e:
        logger.exception(f"TTS API error: {e}")
        return _error("Failed to generate speech", 500)

    return Response(
        content=audio,
        media_type="audio/mpeg",
        headers={"Cache-Control": TTS_CACHE_CONTROL},
    )


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "kinora_server.main:app",
        host=os.getenv("KINORA_HOST", "127.0.0.1"),
        port=int(os.getenv("KINORA_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
