from __future__ import annotations

import logging
import threading
from typing import Awaitable, Callable, Optional, Protocol

from .audio import AudioPlayer

logger = logging.getLogger("kinora")


class PlaybackHandle(Protocol):
    @property
    def is_active(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class SystemSpeaker:
    """On-device fallback voice using pyttsx3 (espeak/SAPI5/NSSpeechSynthesizer)."""

    rate = 170

    def __init__(self, text: str):
        self.text = text
        self._engine = None
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return self._thread is not None and not self._finished.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="kinora-fallback-tts", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            import pyttsx3

            self._engine = pyttsx3.init()
            self._engine.setProperty("rate", self.rate)
            self._engine.say(self.text)
            self._engine.runAndWait()
        except Exception as e:
            logger.error(f"Fallback speech failed: {e}")
        finally:
            self._finished.set()

    def stop(self) -> None:
        self._finished.set()
        if self._engine is not None:
            self._engine.stop()


_fallback_available: Optional[bool] = None


def system_speaker(text: str) -> Optional[SystemSpeaker]:
    """A fallback speaker, or None when no local speech engine can be initialized."""
    global _fallback_available
    if _fallback_available is None:
        try:
            import pyttsx3

            pyttsx3.init()
            _fallback_available = True
        except Exception as e:
            logger.info(f"pyttsx3 fallback not available: {e}")
            _fallback_available = False
    return SystemSpeaker(text) if _fallback_available else None


class PlaybackManager:
    """
    Owns the single "currently playing" audio handle.

    A new playback always stops and releases the previous one before any
    audio starts. Requests arriving while a play is still fetching audio
    are dropped; a stop in that window cancels the pending play instead.
    """

    def __init__(
        self,
        synthesize: Callable[[str], Awaitable[bytes]],
        player_factory: Callable[[bytes], PlaybackHandle] = AudioPlayer,
        fallback_factory: Optional[Callable[[str], Optional[PlaybackHandle]]] = system_speaker,
    ):
        self._synthesize = synthesize
        self._player_factory = player_factory
        self._fallback_factory = fallback_factory
        self._current: Optional[PlaybackHandle] = None
        self.current_id: Optional[str] = None
        self._transitioning = False
        self._cancel_pending = False

    def is_playing(self, message_id: Optional[str] = None) -> bool:
        if self._current is None or not self._current.is_active:
            return False
        return message_id is None or message_id == self.current_id

    def _release(self) -> None:
        current, self._current, self.current_id = self._current, None, None
        if current is not None:
            current.stop()

    async def _acquire(self, text: str) -> Optional[PlaybackHandle]:
        try:
            audio = await self._synthesize(text)
            if audio:
                return self._player_factory(audio)
            logger.warning("Speech service returned no audio; using fallback voice.")
        except Exception as e:
            logger.warning(f"Speech fetch failed, using fallback voice: {e}")
        if self._fallback_factory is None:
            return None
        return self._fallback_factory(text)

    async def play(self, message_id: str, text: str) -> bool:
        """Speak `text` for `message_id`. Returns False when nothing was started."""
        if self._transitioning:
            logger.debug(f"Ignoring play for {message_id}: playback change in progress")
            return False
        if not text or not text.strip():
            return False

        self._transitioning = True
        self._cancel_pending = False
        try:
            self._release()
            handle = await self._acquire(text)
            if handle is None:
                return False
            if self._cancel_pending:
                logger.debug(f"Playback for {message_id} cancelled before start")
                return False
            self._current, self.current_id = handle, message_id
            handle.start()
            return True
        finally:
            self._transitioning = False
            self._cancel_pending = False

    def stop(self) -> None:
        if self._transitioning:
            self._cancel_pending = True
            return
        self._release()

    async def toggle(self, message_id: str, text: str) -> bool:
        """Stop if `message_id` is playing, otherwise play it. Returns True if now playing."""
        if self.is_playing(message_id):
            self.stop()
            return False
        return await self.play(message_id, text)
