"""Tests for tutor prompt composition and history trimming."""

import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import patch

from kinora_server.services import llm


class TestSystemPrompt(unittest.TestCase):
    def test_language_pair(self):
        prompt = llm.build_system_prompt("French", "Japanese", response_format="text")
        self.assertTrue(prompt.startswith(llm.BASE_PROMPT))
        self.assertIn("The user is learning French. Their native language is Japanese.", prompt)

    def test_persona_fields(self):
        persona = {
            "name": " Mina ",
            "learningGoals": "ordering food on holiday",
            "proficiencyLevel": "intermediate",
            "customContext": "Works as a nurse",
        }
        prompt = llm.build_system_prompt("Spanish", "Korean", persona, response_format="text")
        self.assertIn("- Name: Mina", prompt)
        self.assertIn("- Learning goals: ordering food on holiday", prompt)
        self.assertIn("- Additional context: Works as a nurse", prompt)
        self.assertIn(llm.LEVEL_GUIDANCE["intermediate"], prompt)

    def test_empty_persona_fields_omitted(self):
        prompt = llm.build_system_prompt(persona={"name": "  ", "learningGoals": ""}, response_format="text")
        self.assertNotIn("Name:", prompt)
        self.assertNotIn("Learning goals:", prompt)
        self.assertIn("Proficiency level: beginner", prompt)

    def test_unknown_level_uses_beginner_guidance(self):
        prompt = llm.build_system_prompt(persona={"proficiencyLevel": "expert"}, response_format="text")
        self.assertIn(llm.LEVEL_GUIDANCE["beginner"], prompt)

    def test_json_format_instructions(self):
        self.assertIn(llm.JSON_FORMAT_INSTRUCTIONS, llm.build_system_prompt(response_format="json"))
        self.assertNotIn(llm.JSON_FORMAT_INSTRUCTIONS, llm.build_system_prompt(response_format="text"))


class TestBuildMessages(unittest.TestCase):
    def test_system_prompt_first(self):
        messages = llm.build_messages([{"role": "user", "content": "hi"}], "SYSTEM")
        self.assertEqual(messages, [{"role": "system", "content": "SYSTEM"}, {"role": "user", "content": "hi"}])

    def test_history_trimmed_to_most_recent(self):
        history = [{"role": "user" if i % 2 == 0 else "assistant", "content": str(i)} for i in range(10)]
        with patch.object(llm, "HISTORY_KEEP_LAST_MESSAGES", 4):
            messages = llm.build_messages(history, "SYSTEM")
        self.assertEqual([m["content"] for m in messages], ["SYSTEM", "6", "7", "8", "9"])


def chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


async def fake_stream(items, error=None):
    for item in items:
        yield item
    if error is not None:
        raise error


class TestIterStreamText(unittest.TestCase):
    def _collect(self, stream):
        async def _run():
            return [text async for text in llm.iter_stream_text(stream)]

        return asyncio.run(_run())

    def test_skips_empty_deltas(self):
        items = [chunk("Bon"), SimpleNamespace(choices=[]), chunk(None), chunk("jour")]
        self.assertEqual(self._collect(fake_stream(items)), ["Bon", "jour"])

    def test_error_ends_stream(self):
        items = [chunk("Bon")]
        self.assertEqual(self._collect(fake_stream(items, error=TimeoutError("slow"))), ["Bon"])


class TestGroqClient(unittest.TestCase):
    def test_missing_key_raises(self):
        with patch.object(llm, "GROQ_API_KEY", None), patch.object(llm, "_client", None):
            with self.assertRaises(RuntimeError):
                asyncio.run(llm.open_chat_stream([{"role": "user", "content": "hi"}], "SYSTEM"))


if __name__ == "__main__":
    unittest.main()
