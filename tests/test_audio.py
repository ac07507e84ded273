"""Tests for PCM conversion, resampling and the energy speech gate."""

import unittest

import numpy as np

from kinora_client.audio import (
    SAMPLE_RATE,
    linear_resample,
    pcm16_to_float32,
    prepare_for_transcription,
    rms_energy,
    speech_probability,
)


class TestPcmConversion(unittest.TestCase):
    def test_scales_to_unit_range(self):
        pcm = np.array([0, 16384, -32768, 32767], dtype=np.int16).tobytes()
        out = pcm16_to_float32(pcm)
        self.assertEqual(out.dtype, np.float32)
        np.testing.assert_allclose(out, [0.0, 0.5, -1.0, 32767 / 32768.0], rtol=1e-6)

    def test_odd_trailing_byte_dropped(self):
        pcm = np.array([100, 200], dtype=np.int16).tobytes() + b"\x01"
        self.assertEqual(pcm16_to_float32(pcm).size, 2)

    def test_stereo_averaged_to_mono(self):
        pcm = np.array([1000, 3000, -2000, 0], dtype=np.int16).tobytes()
        out = pcm16_to_float32(pcm, channels=2)
        np.testing.assert_allclose(out, [2000 / 32768.0, -1000 / 32768.0], rtol=1e-6)


class TestResample(unittest.TestCase):
    def test_downsample_length(self):
        x = np.zeros(48000, dtype=np.float32)
        self.assertEqual(linear_resample(x, 48000, SAMPLE_RATE).size, 16000)

    def test_same_rate_is_passthrough(self):
        x = np.arange(10, dtype=np.float32)
        np.testing.assert_array_equal(linear_resample(x, 16000, 16000), x)

    def test_empty_input(self):
        self.assertEqual(linear_resample(np.zeros(0, dtype=np.float32), 44100, 16000).size, 0)

    def test_interpolates_ramp(self):
        x = np.linspace(0.0, 1.0, 101, dtype=np.float32)
        out = linear_resample(x, 200, 100)
        self.assertAlmostEqual(float(out[0]), 0.0, places=5)
        self.assertAlmostEqual(float(out[-1]), 1.0, places=5)
        self.assertTrue(np.all(np.diff(out) >= 0))

    def test_prepare_for_transcription(self):
        pcm = np.full(4410, 8192, dtype=np.int16).tobytes()
        out = prepare_for_transcription(pcm, 44100)
        self.assertEqual(out.size, 1600)
        self.assertAlmostEqual(float(out.mean()), 0.25, places=4)


class TestSpeechGate(unittest.TestCase):
    def test_silence(self):
        silence = np.zeros(320, dtype=np.float32)
        self.assertEqual(rms_energy(silence), 0.0)
        self.assertEqual(speech_probability(silence), 0.0)

    def test_loud_speech_saturates(self):
        self.assertEqual(speech_probability(np.full(320, 0.5, dtype=np.float32)), 1.0)

    def test_mid_energy(self):
        prob = speech_probability(np.full(320, 0.035, dtype=np.float32))
        self.assertAlmostEqual(prob, 0.5, places=3)

    def test_empty_frame(self):
        self.assertEqual(rms_energy(np.zeros(0, dtype=np.float32)), 0.0)


if __name__ == "__main__":
    unittest.main()
