from __future__ import annotations

import io
import logging
import threading
from typing import Callable, Optional

import numpy as np
from pydub import AudioSegment

logger = logging.getLogger("kinora")

# Whisper expects 16kHz mono float32.
SAMPLE_RATE = 16000


def pcm16_to_float32(pcm16: bytes, channels: int = 1) -> np.ndarray:
    """Little-endian PCM16 to mono float32 in [-1, 1]; extra channels are averaged."""
    x = np.frombuffer(pcm16[: len(pcm16) - len(pcm16) % 2], dtype=np.int16).astype(np.float32)
    if channels > 1:
        x = x[: x.size - x.size % channels].reshape(-1, channels).mean(axis=1)
    return (x / 32768.0).clip(-1.0, 1.0)


def linear_resample(x: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """
    Fast linear resampler for 1D float32 arrays.
    Good enough for speech going into STT (e.g. 48k -> 16k).
    """
    if x.size == 0 or src_rate == dst_rate:
        return x.astype(np.float32, copy=False)
    x = x.astype(np.float32, copy=False).reshape(-1)
    ratio = float(dst_rate) / float(src_rate)
    n_out = int(round(x.shape[0] * ratio))
    if n_out <= 1:
        return np.zeros((0,), dtype=np.float32)
    t = np.linspace(0.0, x.shape[0] - 1, num=n_out, dtype=np.float32)
    i0 = np.floor(t).astype(np.int32)
    i1 = np.minimum(i0 + 1, x.shape[0] - 1)
    frac = t - i0.astype(np.float32)
    return (x[i0] * (1.0 - frac) + x[i1] * frac).astype(np.float32)


def rms_energy(x: np.ndarray) -> float:
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


def speech_probability(x: np.ndarray) -> float:
    """Energy gate mapped to a pseudo-probability, tuned loosely for mic input post-AGC."""
    e = rms_energy(x)
    return min(1.0, max(0.0, (e - 0.01) / 0.05))


def prepare_for_transcription(pcm16: bytes, src_rate: int, channels: int = 1) -> np.ndarray:
    """Raw microphone capture to 16kHz mono float32."""
    return linear_resample(pcm16_to_float32(pcm16, channels), src_rate, SAMPLE_RATE)


class MicrophoneCapture:
    """
    PortAudio input stream delivering PCM16 frames to a callback.
    The callback runs on a PortAudio thread.
    """

    def __init__(self, sample_rate: Optional[int] = None, channels: int = 1, frames_per_buffer: int = 1024):
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames_per_buffer = frames_per_buffer
        self._pa = None
        self._stream = None

    def start(self, on_frame: Callable[[bytes], None]) -> None:
        if self._stream is not None:
            return
        try:
            import pyaudio
        except ImportError as e:
            raise RuntimeError("PyAudio is required for microphone capture. Install kinora[audio].") from e

        self._pa = pyaudio.PyAudio()
        if self.sample_rate is None:
            # Capture at the device's native rate and resample later.
            self.sample_rate = int(self._pa.get_default_input_device_info()["defaultSampleRate"])

        def _callback(in_data, frame_count, time_info, status):
            on_frame(in_data)
            return (None, pyaudio.paContinue)

        self._stream = self._pa.open(
            format=pyaudio.paInt16,
            channels=self.channels,
            rate=self.sample_rate,
            input=True,
            frames_per_buffer=self.frames_per_buffer,
            stream_callback=_callback,
        )
        self._stream.start_stream()
        logger.debug(f"Microphone capture started at {self.sample_rate} Hz")

    def stop(self) -> None:
        stream, pa = self._stream, self._pa
        self._stream, self._pa = None, None
        if stream is not None:
            stream.stop_stream()
            stream.close()
        if pa is not None:
            pa.terminate()


class AudioPlayer:
    """Plays one encoded clip on a background thread; `stop()` interrupts it."""

    chunk_bytes = 4096

    def __init__(self, data: bytes):
        self.data = data
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return self._thread is not None and not self._stop.is_set() and not self._finished.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="kinora-playback", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            import pyaudio

            segment = AudioSegment.from_file(io.BytesIO(self.data))
            pa = pyaudio.PyAudio()
            try:
                stream = pa.open(
                    format=pa.get_format_from_width(segment.sample_width),
                    channels=segment.channels,
                    rate=segment.frame_rate,
                    output=True,
                )
                raw = segment.raw_data
                for i in range(0, len(raw), self.chunk_bytes):
                    if self._stop.is_set():
                        break
                    stream.write(raw[i : i + self.chunk_bytes])
                stream.stop_stream()
                stream.close()
            finally:
                pa.terminate()
        except Exception as e:
            logger.error(f"Audio playback failed: {e}")
        finally:
            self._finished.set()

    def stop(self) -> None:
        # Non-blocking; the playback thread exits at its next chunk boundary.
        self._stop.set()
