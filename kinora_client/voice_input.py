"""
Voice capture and turn-taking.

Two ways to turn speech into a sent message:

* ContinuousVoiceInput: a recognizer streams partial transcripts; a rolling
  silence timer sends the utterance once the speaker has been quiet long
  enough (only when auto-send is on).
* BlockVoiceInput: audio is buffered while recording and transcribed in one
  request when the user stops.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from dotenv import load_dotenv

from .audio import SAMPLE_RATE, pcm16_to_float32, prepare_for_transcription, speech_probability

load_dotenv()

logger = logging.getLogger("kinora")

SILENCE_TIMEOUT_S = float(os.getenv("KINORA_SILENCE_TIMEOUT_S", "2.0"))
STREAM_INTERVAL_S = float(os.getenv("KINORA_STREAM_INTERVAL_S", "0.6"))
# Whisper sees at most 30s per request.
STREAM_MAX_SECONDS = 30.0
SPEECH_GATE = 0.5

# Raised by a recognizer when it is torn down on purpose.
ABORTED = "aborted"

SendCallback = Callable[[str], object]
Transcribe = Callable[[Sequence[float]], Awaitable[str]]


class VoiceState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    PROCESSING = "PROCESSING"


class Recognizer(Protocol):
    def start(self, on_result: Callable[[str], None], on_error: Callable[[str], None]) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...


class AudioSource(Protocol):
    sample_rate: Optional[int]
    channels: int

    def start(self, on_frame: Callable[[bytes], None]) -> None: ...

    def stop(self) -> None: ...


class _VoiceInputBase:
    def __init__(
        self,
        on_send: SendCallback,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.on_send = on_send
        self.on_error = on_error
        self.state = VoiceState.IDLE
        self._pending: set[asyncio.Future] = set()

    @property
    def is_recording(self) -> bool:
        return self.state == VoiceState.RECORDING

    def _deliver(self, text: str) -> None:
        result = self.on_send(text)
        if inspect.isawaitable(result):
            fut = asyncio.ensure_future(result)
            self._pending.add(fut)
            fut.add_done_callback(self._pending.discard)

    def _report(self, error: str) -> None:
        logger.warning(f"Voice input error: {error}")
        if self.on_error is not None:
            self.on_error(error)


class ContinuousVoiceInput(_VoiceInputBase):
    def __init__(
        self,
        recognizer: Recognizer,
        on_send: SendCallback,
        auto_send_enabled: bool = True,
        silence_timeout: float = SILENCE_TIMEOUT_S,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(on_send, on_error)
        self.recognizer = recognizer
        self.auto_send_enabled = auto_send_enabled
        self.silence_timeout = silence_timeout
        self.on_transcript = on_transcript
        self.transcript = ""
        self._silence_timer: Optional[asyncio.TimerHandle] = None

    @property
    def silence_timer_armed(self) -> bool:
        return self._silence_timer is not None

    def set_auto_send(self, enabled: bool) -> None:
        self.auto_send_enabled = enabled
        if not enabled:
            self._cancel_silence_timer()

    async def toggle(self) -> None:
        if self.state == VoiceState.IDLE:
            self.start()
        elif self.state == VoiceState.RECORDING:
            self.finish()

    def start(self) -> None:
        if self.state != VoiceState.IDLE:
            return
        self.transcript = ""
        self.state = VoiceState.RECORDING
        try:
            self.recognizer.start(self._handle_result, self._handle_error)
        except Exception as e:
            self.state = VoiceState.IDLE
            self._report(str(e))

    def finish(self) -> None:
        """Stop listening and send whatever was heard."""
        if self.state != VoiceState.RECORDING:
            return
        self._cancel_silence_timer()
        self.state = VoiceState.PROCESSING
        self.recognizer.stop()
        text, self.transcript = self.transcript.strip(), ""
        self.state = VoiceState.IDLE
        if text:
            self._deliver(text)

    def cancel(self) -> None:
        """Tear down the session and drop the partial transcript."""
        self._cancel_silence_timer()
        self.transcript = ""
        self.state = VoiceState.IDLE
        self.recognizer.abort()

    def _handle_result(self, transcript: str) -> None:
        if self.state != VoiceState.RECORDING:
            return
        self.transcript = transcript
        if self.on_transcript is not None:
            self.on_transcript(transcript)
        if self.auto_send_enabled:
            self._arm_silence_timer()

    def _handle_error(self, error: str) -> None:
        if error == ABORTED:
            return
        self._cancel_silence_timer()
        self.transcript = ""
        if self.state == VoiceState.RECORDING:
            self.recognizer.abort()
        self.state = VoiceState.IDLE
        self._report(error)

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        loop = asyncio.get_running_loop()
        self._silence_timer = loop.call_later(self.silence_timeout, self._on_silence)

    def _cancel_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None

    def _on_silence(self) -> None:
        self._silence_timer = None
        if self.auto_send_enabled:
            logger.debug(f"Silence for {self.silence_timeout:.1f}s; sending transcript")
            self.finish()


class BlockVoiceInput(_VoiceInputBase):
    def __init__(
        self,
        source: AudioSource,
        transcribe: Transcribe,
        on_send: SendCallback,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(on_send, on_error)
        self.source = source
        self.transcribe = transcribe
        self._chunks: list[bytes] = []
        self._session = 0

    async def toggle(self) -> None:
        if self.state == VoiceState.IDLE:
            self.start()
        elif self.state == VoiceState.RECORDING:
            await self.finish()

    def start(self) -> None:
        if self.state != VoiceState.IDLE:
            return
        self._session += 1
        self._chunks = []
        self.state = VoiceState.RECORDING
        try:
            self.source.start(self._chunks.append)
        except Exception as e:
            self.state = VoiceState.IDLE
            self._report(str(e))

    async def finish(self) -> str:
        """Stop recording, transcribe the whole buffer and send it."""
        if self.state != VoiceState.RECORDING:
            return ""
        session = self._session
        self.state = VoiceState.PROCESSING
        self.source.stop()
        pcm, self._chunks = b"".join(self._chunks), []
        if not pcm:
            self.state = VoiceState.IDLE
            return ""

        samples = prepare_for_transcription(pcm, self.source.sample_rate, self.source.channels)
        if samples.size > STREAM_MAX_SECONDS * SAMPLE_RATE:
            logger.warning(
                f"Recording is {samples.size / SAMPLE_RATE:.0f}s; speech after {STREAM_MAX_SECONDS:.0f}s will not be transcribed"
            )
        try:
            text = (await self.transcribe(samples.tolist())).strip()
        except Exception as e:
            if session == self._session:
                self.state = VoiceState.IDLE
                self._report(str(e))
            return ""

        if session != self._session:
            # Cancelled while the request was in flight.
            return ""
        self.state = VoiceState.IDLE
        if text:
            self._deliver(text)
        return text

    def cancel(self) -> None:
        """Stop recording and discard the buffered audio."""
        self._session += 1
        if self.state == VoiceState.RECORDING:
            self.source.stop()
        self._chunks = []
        self.state = VoiceState.IDLE


class StreamingRecognizer:
    """
    Incremental recognition on top of the transcription endpoint.

    Microphone frames accumulate into the current utterance; every interval,
    if new speech energy arrived, the utterance so far is transcribed and a
    partial result emitted when the text changed.
    """

    def __init__(
        self,
        source: AudioSource,
        transcribe: Transcribe,
        interval_s: float = STREAM_INTERVAL_S,
        speech_gate: float = SPEECH_GATE,
        max_seconds: float = STREAM_MAX_SECONDS,
    ):
        self.source = source
        self.transcribe = transcribe
        self.interval_s = interval_s
        self.speech_gate = speech_gate
        self.max_seconds = max_seconds
        self.trimmed = False
        self._pcm = bytearray()
        self._new_speech = False
        self._task: Optional[asyncio.Task] = None
        self._on_error: Optional[Callable[[str], None]] = None

    def start(self, on_result: Callable[[str], None], on_error: Callable[[str], None]) -> None:
        loop = asyncio.get_running_loop()
        self._pcm = bytearray()
        self._new_speech = False
        self.trimmed = False
        self._on_error = on_error
        self.source.start(lambda data: loop.call_soon_threadsafe(self._on_frame, data))
        self._task = loop.create_task(self._run(on_result, on_error))

    def _on_frame(self, data: bytes) -> None:
        self._pcm.extend(data)
        max_bytes = int(self.max_seconds * (self.source.sample_rate or 16000)) * 2 * self.source.channels
        if len(self._pcm) > max_bytes:
            del self._pcm[: len(self._pcm) - max_bytes]
            if not self.trimmed:
                self.trimmed = True
                logger.warning(
                    f"Utterance longer than {self.max_seconds:.0f}s; only the last {self.max_seconds:.0f}s will be transcribed"
                )
        if speech_probability(pcm16_to_float32(data, self.source.channels)) >= self.speech_gate:
            self._new_speech = True

    async def _run(self, on_result: Callable[[str], None], on_error: Callable[[str], None]) -> None:
        last = ""
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                if not self._new_speech:
                    continue
                self._new_speech = False
                samples = prepare_for_transcription(bytes(self._pcm), self.source.sample_rate, self.source.channels)
                text = (await self.transcribe(samples.tolist())).strip()
                if text and text != last:
                    last = text
                    on_result(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._halt()
            on_error(str(e))

    def _halt(self) -> None:
        self.source.stop()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def stop(self) -> None:
        self._halt()

    def abort(self) -> None:
        self._halt()
        self._pcm = bytearray()
        if self._on_error is not None:
            self._on_error(ABORTED)
