import os
import logging
from time import perf_counter

import edge_tts
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("kinora")

# Jenny is a friendly, clear American English voice.
DEFAULT_VOICE = os.getenv("TTS_DEFAULT_VOICE", "en-US-JennyNeural")

# Edge voices accept roughly +/-100% rate and a bounded pitch shift.
MAX_RATE_PERCENT = 100
MAX_PITCH_HZ = 100


def format_rate(rate: int) -> str:
    """Signed percent string for the synthesis service, e.g. 0 -> '+0%'."""
    rate = max(-MAX_RATE_PERCENT, min(MAX_RATE_PERCENT, int(rate)))
    return f"{rate:+d}%"


def format_pitch(pitch: int) -> str:
    """Signed hertz string for the synthesis service, e.g. -5 -> '-5Hz'."""
    pitch = max(-MAX_PITCH_HZ, min(MAX_PITCH_HZ, int(pitch)))
    return f"{pitch:+d}Hz"


async def synthesize_speech(
    text: str,
    voice: str = DEFAULT_VOICE,
    rate: int = 0,
    pitch: int = 0,
) -> bytes:
    """
    Synthesizes speech with a hosted Edge neural voice.

    Returns MP3 bytes. Raises if the service returns no audio.
    """
    if not text or not text.strip():
        return b""

    synth_start = perf_counter()
    communicate = edge_tts.Communicate(
        text,
        voice or DEFAULT_VOICE,
        rate=format_rate(rate),
        pitch=format_pitch(pitch),
    )
    audio = bytearray()
    async for chunk in communicate.stream():
        if chunk["type"] == "audio":
            audio.extend(chunk["data"])

    if not audio:
        raise RuntimeError(f"No audio received for voice '{voice}'")

    elapsed = (perf_counter() - synth_start) * 1000
    logger.info(f"TTS [edge {voice}] {len(text)} chars -> {len(audio)} bytes in {elapsed:.1f} ms.")
    return bytes(audio)


if __name__ == '__main__':
    import asyncio

    text = "Hello, this is a test of the text to speech system."
    print(f"Synthesizing: '{text}'")
    audio_bytes = asyncio.run(synthesize_speech(text))
    with open("tts_test.mp3", "wb") as f:
        f.write(audio_bytes)
    print("Test audio saved to 'tts_test.mp3'")
