"""Tests for the HTTP client against a mocked transport."""

import asyncio
import json
import unittest

import httpx

from kinora_client.api import KinoraAPIError, KinoraClient
from kinora_client.storage import Message, Persona, Settings


def make_client(handler):
    return KinoraClient(base_url="http://kinora.test", transport=httpx.MockTransport(handler))


class TestStreamChat(unittest.TestCase):
    def test_yields_chunks_and_sends_payload(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"Hola, Sam!", headers={"content-type": "text/plain"})

        async def _run():
            async with make_client(handler) as client:
                return [
                    chunk
                    async for chunk in client.stream_chat(
                        [Message(id="m1", role="user", content="Hola")],
                        Settings(targetLanguage="Spanish", nativeLanguage="English"),
                        Persona(name="Sam"),
                    )
                ]

        chunks = asyncio.run(_run())
        self.assertEqual(b"".join(chunks), b"Hola, Sam!")
        self.assertEqual(seen["path"], "/chat")
        self.assertEqual(seen["body"]["messages"], [{"role": "user", "content": "Hola"}])
        self.assertEqual(seen["body"]["targetLanguage"], "Spanish")
        self.assertEqual(seen["body"]["nativeLanguage"], "English")
        self.assertEqual(seen["body"]["persona"]["name"], "Sam")

    def test_error_status_raises_with_server_message(self):
        def handler(request):
            return httpx.Response(500, json={"error": "Failed to process chat request"})

        async def _run():
            async with make_client(handler) as client:
                async for _ in client.stream_chat([], Settings(), Persona()):
                    pass

        with self.assertRaises(KinoraAPIError) as ctx:
            asyncio.run(_run())
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(str(ctx.exception), "Failed to process chat request")


class TestTranscribe(unittest.TestCase):
    def test_returns_stripped_transcript(self):
        def handler(request):
            body = json.loads(request.content)
            self.assertEqual(body, {"audio": [0.0, 0.5], "model": "tiny"})
            return httpx.Response(200, json={"transcript": "  hello  "})

        async def _run():
            async with make_client(handler) as client:
                return await client.transcribe([0.0, 0.5], model="tiny")

        self.assertEqual(asyncio.run(_run()), "hello")

    def test_non_json_error_uses_fallback_message(self):
        def handler(request):
            return httpx.Response(502, content=b"Bad Gateway")

        async def _run():
            async with make_client(handler) as client:
                await client.transcribe([0.0])

        with self.assertRaises(KinoraAPIError) as ctx:
            asyncio.run(_run())
        self.assertEqual(str(ctx.exception), "Failed to transcribe audio")
        self.assertEqual(ctx.exception.status_code, 502)


class TestFetchSpeech(unittest.TestCase):
    def test_sends_voice_parameters(self):
        def handler(request):
            self.assertEqual(request.url.path, "/tts")
            self.assertEqual(request.url.params["voice"], "en-US-AvaNeural")
            self.assertEqual(request.url.params["rate"], "-20")
            self.assertEqual(request.url.params["pitch"], "3")
            return httpx.Response(200, content=b"ID3audio", headers={"content-type": "audio/mpeg"})

        async def _run():
            async with make_client(handler) as client:
                return await client.fetch_speech("Hi", "en-US-AvaNeural", rate=-20, pitch=3)

        self.assertEqual(asyncio.run(_run()), b"ID3audio")

    def test_error_raises(self):
        def handler(request):
            return httpx.Response(400, json={"error": "Text parameter is required"})

        async def _run():
            async with make_client(handler) as client:
                await client.fetch_speech("", "en-US-JennyNeural")

        with self.assertRaises(KinoraAPIError) as ctx:
            asyncio.run(_run())
        self.assertEqual(str(ctx.exception), "Text parameter is required")


if __name__ == "__main__":
    unittest.main()
