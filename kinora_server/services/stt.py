import os
import logging
import threading
import warnings
from pathlib import Path
from time import perf_counter
from typing import Dict, Sequence, Tuple

from dotenv import load_dotenv
import numpy as np
import torch

# Load .env early so model env vars are picked up.
load_dotenv()

logger = logging.getLogger("kinora")

# Determine device (CUDA if available, else CPU)
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"

SAMPLE_RATE = 16000
# Whisper sees at most one 30s window; longer input is truncated.
WHISPER_WINDOW_S = 30

MODEL_MAP: Dict[str, str] = {
    "tiny": os.getenv("WHISPER_TINY_MODEL_ID", "openai/whisper-tiny.en"),
    "small": os.getenv("WHISPER_SMALL_MODEL_ID", "openai/whisper-small.en"),
}
DEFAULT_MODEL_SIZE = "small"

# Project-local models folder for easy cleanup
MODELS_DIR = os.getenv(
    "WHISPER_MODELS_DIR",
    str(Path(__file__).resolve().parents[2] / "models"),
)

# Silence the most common transformer warnings/log spam.
warnings.filterwarnings("ignore", message=".*Special tokens have been added.*")
try:
    from transformers import WhisperForConditionalGeneration, WhisperProcessor
    from transformers.utils import logging as hf_logging
    hf_logging.set_verbosity_error()
except Exception as e:
    logger.warning(f"Failed to import Whisper dependencies: {e}")
    WhisperProcessor = None
    WhisperForConditionalGeneration = None

# Loaded pipelines keyed by model id, so switching sizes doesn't reload.
_transcribers: Dict[str, Tuple["WhisperProcessor", "WhisperForConditionalGeneration", bool]] = {}
_load_lock = threading.Lock()


def resolve_model_id(model_size: str = DEFAULT_MODEL_SIZE) -> str:
    return MODEL_MAP.get(model_size or DEFAULT_MODEL_SIZE, MODEL_MAP[DEFAULT_MODEL_SIZE])


def _get_whisper_model(model_size: str = DEFAULT_MODEL_SIZE):
    model_id = resolve_model_id(model_size)
    with _load_lock:
        cached = _transcribers.get(model_id)
        if cached is not None:
            return cached
        if WhisperProcessor is None or WhisperForConditionalGeneration is None:
            raise RuntimeError("Whisper backend unavailable; install transformers and torch.")

        logger.info(f"Loading Whisper model: {model_id} on {DEVICE} (models stored in {MODELS_DIR})")
        load_start = perf_counter()
        processor = WhisperProcessor.from_pretrained(model_id, cache_dir=MODELS_DIR)
        model = WhisperForConditionalGeneration.from_pretrained(model_id, cache_dir=MODELS_DIR)
        model = model.to(DEVICE)
        use_fp16 = False
        if DEVICE == "cuda":
            model = model.half()  # FP16 for faster inference on GPU
            use_fp16 = True
        model.eval()
        elapsed = (perf_counter() - load_start) * 1000
        logger.info(f"Whisper model {model_id} loaded in {elapsed:.0f} ms")

        _transcribers[model_id] = (processor, model, use_fp16)
        return _transcribers[model_id]


def preload_stt(model_size: str = DEFAULT_MODEL_SIZE) -> None:
    """Warm the Whisper model so the first request is faster."""
    try:
        _get_whisper_model(model_size)
        logger.info(f"Whisper backend preloaded ({resolve_model_id(model_size)}) on {DEVICE}.")
    except Exception as e:
        logger.warning(f"Failed to preload Whisper backend '{model_size}': {e}")


def to_float32(samples: Sequence[float]) -> np.ndarray:
    """Coerce PCM samples to a flat float32 array clipped to [-1, 1]."""
    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    return np.clip(np.nan_to_num(audio, copy=False), -1.0, 1.0)


def _transcribe_with_whisper(audio_data: np.ndarray, model_size: str) -> str:
    if audio_data.size == 0:
        logger.warning("Empty audio data provided to Whisper")
        return ""

    duration = audio_data.size / SAMPLE_RATE
    if duration > WHISPER_WINDOW_S:
        logger.warning(f"Audio is {duration:.1f}s; Whisper only transcribes the first {WHISPER_WINDOW_S}s")

    processor, model, use_fp16 = _get_whisper_model(model_size)

    # Input is already 16kHz mono float32 from the client.
    processed = processor(audio_data, sampling_rate=SAMPLE_RATE, return_tensors="pt")

    inputs = {}
    for k, v in processed.items():
        v = v.to(DEVICE)
        if use_fp16 and v.dtype == torch.float32:
            v = v.half()
        inputs[k] = v

    # English-only checkpoints; greedy decoding for speed and determinism.
    with torch.no_grad():
        generated_ids = model.generate(
            **inputs,
            max_length=448,
            num_beams=1,
            do_sample=False,
        )

    transcription = processor.batch_decode(generated_ids, skip_special_tokens=True)[0]
    return transcription.strip()


def transcribe_pcm(samples: Sequence[float], model_size: str = DEFAULT_MODEL_SIZE) -> str:
    """
    Transcribes 16kHz mono float PCM.

    Args:
        samples: Float samples in [-1, 1] at 16kHz.
        model_size: "tiny" or "small"; unknown sizes use "small".

    Returns:
        The transcribed text. Model errors propagate to the caller.
    """
    wall_start = perf_counter()
    audio_data = to_float32(samples)

    if os.getenv("DEBUG_STT", "0") == "1" and audio_data.size:
        logger.debug(
            f"Audio stats: duration={audio_data.size / SAMPLE_RATE:.2f}s, "
            f"max={np.max(np.abs(audio_data)):.4f}, mean={np.mean(np.abs(audio_data)):.4f}"
        )

    text = _transcribe_with_whisper(audio_data, model_size)
    total_ms = (perf_counter() - wall_start) * 1000
    logger.info(f"STT [whisper {resolve_model_id(model_size)}] [{DEVICE}] total={total_ms:.0f} ms")
    return text


if __name__ == '__main__':
    # Transcribe one second of silence to exercise the model download/load path.
    print(f"Transcription: {transcribe_pcm([0.0] * SAMPLE_RATE, 'tiny')!r}")
