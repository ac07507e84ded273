import os
import logging
from dataclasses import asdict
from time import perf_counter
from typing import AsyncGenerator, Dict, List, Optional, Sequence

import httpx
from dotenv import load_dotenv

from .storage import Message, Persona, Settings

load_dotenv()

SERVER_URL = os.getenv("KINORA_SERVER_URL", "http://127.0.0.1:8000")
HTTP_TIMEOUT_S = float(os.getenv("KINORA_HTTP_TIMEOUT_S", "60.0"))

logger = logging.getLogger("kinora")


class KinoraAPIError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        return response.json().get("error") or fallback
    except ValueError:
        return fallback


class KinoraClient:
    """Async HTTP client for the chat, transcription and speech routes."""

    def __init__(
        self,
        base_url: str = SERVER_URL,
        timeout: float = HTTP_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "KinoraClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def stream_chat(
        self,
        messages: List[Message],
        settings: Settings,
        persona: Persona,
    ) -> AsyncGenerator[bytes, None]:
        """Yield raw reply bytes in arrival order until the server closes the stream."""
        payload = {
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "targetLanguage": settings.targetLanguage,
            "nativeLanguage": settings.nativeLanguage,
            "persona": asdict(persona),
        }
        async with self._http.stream("POST", "/chat", json=payload) as response:
            if response.status_code != 200:
                await response.aread()
                raise KinoraAPIError(
                    _error_message(response, "Failed to process chat request"),
                    response.status_code,
                )
            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk

    async def transcribe(self, samples: Sequence[float], model: str = "small") -> str:
        start = perf_counter()
        response = await self._http.post("/stt", json={"audio": list(samples), "model": model})
        if response.status_code != 200:
            raise KinoraAPIError(_error_message(response, "Failed to transcribe audio"), response.status_code)
        transcript = (response.json().get("transcript") or "").strip()
        logger.debug(f"/stt {len(samples)} samples -> {len(transcript)} chars in {(perf_counter() - start) * 1000:.0f} ms")
        return transcript

    async def fetch_speech(self, text: str, voice: str, rate: int = 0, pitch: int = 0) -> bytes:
        params: Dict[str, object] = {"text": text, "voice": voice, "rate": rate, "pitch": pitch}
        response = await self._http.get("/tts", params=params)
        if response.status_code != 200:
            raise KinoraAPIError(_error_message(response, "Failed to generate speech"), response.status_code)
        return response.content
