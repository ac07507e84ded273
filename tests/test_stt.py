"""Tests for Whisper input handling that do not need model weights."""

import unittest
from unittest.mock import patch

import numpy as np

from kinora_server.services import stt


class TestWhisperInput(unittest.TestCase):
    def test_to_float32_clips_and_clears_nan(self):
        out = stt.to_float32([0.5, 2.0, -3.0, float("nan")])
        np.testing.assert_array_equal(out, np.array([0.5, 1.0, -1.0, 0.0], dtype=np.float32))

    def test_empty_audio_skips_model(self):
        with patch.object(stt, "_get_whisper_model") as get_model:
            self.assertEqual(stt.transcribe_pcm([]), "")
        get_model.assert_not_called()

    def test_unknown_size_uses_small(self):
        self.assertEqual(stt.resolve_model_id("large"), stt.MODEL_MAP["small"])
        self.assertEqual(stt.resolve_model_id("tiny"), stt.MODEL_MAP["tiny"])

    def test_long_audio_warns(self):
        audio = np.zeros(int(31 * stt.SAMPLE_RATE), dtype=np.float32)
        with patch.object(stt, "_get_whisper_model", side_effect=RuntimeError("no weights")):
            with self.assertLogs("kinora", level="WARNING") as logs:
                with self.assertRaises(RuntimeError):
                    stt._transcribe_with_whisper(audio, "tiny")
        self.assertTrue(any("first 30s" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
