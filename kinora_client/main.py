"""Terminal front end for Kinora.

Usage:
    kinora                       # chat with the server at $KINORA_SERVER_URL
    kinora --server http://host:8000 --storage ./kinora.json

Type to chat. Commands start with "/"; "/help" lists them.
"""
import argparse
import asyncio
import logging
import os
import sys
from dataclasses import asdict, fields
from typing import List, Optional

from .api import SERVER_URL, KinoraClient
from .audio import MicrophoneCapture
from .chat import ChatSession
from .storage import (
    DEFAULT_STORAGE_PATH,
    JsonFileStore,
    KinoraStorage,
    VOICE_OPTIONS,
    Message,
    format_bytes,
)
from .stream import parse_reply
from .voice_input import BlockVoiceInput, ContinuousVoiceInput, StreamingRecognizer

HELP = """\
/voice              start recording (Enter stops, /cancel discards)
/speak              play or stop the last reply
/new                start a new conversation
/history            list saved conversations
/open N             open conversation N from /history
/delete N           delete conversation N from /history
/rename N TITLE     rename conversation N
/settings           show settings; /set KEY VALUE changes one
/persona            show persona; /persona KEY VALUE changes one
/usage              storage usage
/clear-data         delete all saved data
/quit               exit"""


class TerminalView:
    """Prints the assistant reply as it grows."""

    def __init__(self, stream=sys.stdout):
        self.stream = stream
        self._message_id: Optional[str] = None
        self._printed = 0

    def __call__(self, messages: List[Message]) -> None:
        if not messages or messages[-1].role != "assistant":
            return
        message = messages[-1]
        if message.id != self._message_id:
            self._message_id, self._printed = message.id, 0
            self.stream.write("kinora> ")
        if len(message.content) < self._printed:
            # Content was replaced (fallback reply).
            self.stream.write("\nkinora> ")
            self._printed = 0
        self.stream.write(message.content[self._printed :])
        self._printed = len(message.content)
        self.stream.flush()

    def end_reply(self, message: Optional[Message]) -> None:
        if message is None:
            return
        self.stream.write("\n")
        comments = parse_reply(message.content).comments
        if comments:
            self.stream.write(f"  notes: {comments}\n")
        self.stream.flush()


def _coerce(value: str, current):
    if isinstance(current, bool):
        return value.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    return value


class TerminalApp:
    def __init__(self, client: KinoraClient, storage: KinoraStorage):
        self.view = TerminalView()
        self.session = ChatSession(client, storage, on_update=self.view)
        self.client = client
        self.voice = None
        self._listed: List[str] = []

    def _build_voice_input(self):
        settings = self.session.settings
        source = MicrophoneCapture()

        async def transcribe(samples):
            return await self.client.transcribe(samples, model=settings.whisperModel)

        def on_error(error: str) -> None:
            print(f"[voice] {error}")

        if settings.sttMode == "whisper":
            return BlockVoiceInput(source, transcribe, self._send_voice, on_error=on_error)
        return ContinuousVoiceInput(
            StreamingRecognizer(source, transcribe),
            self._send_voice,
            auto_send_enabled=settings.autoSendEnabled,
            on_transcript=lambda text: print(f"\r[heard] {text}"),
            on_error=on_error,
        )

    async def _send_voice(self, text: str) -> None:
        print(f"\ryou> {text}")
        await self._send(text)

    async def _send(self, text: str) -> None:
        reply = await self.session.send(text)
        self.view.end_reply(reply)

    def _conversation_id(self, arg: str) -> Optional[str]:
        if arg.isdigit() and 0 < int(arg) <= len(self._listed):
            return self._listed[int(arg) - 1]
        return arg or None

    async def handle(self, line: str) -> bool:
        """Run one line of input. Returns False to quit."""
        if self.voice is not None and self.voice.is_recording:
            if line.strip() == "/cancel":
                self.voice.cancel()
                print("[voice] discarded")
            else:
                await self.voice.toggle()
            return True

        if not line.startswith("/"):
            await self._send(line)
            return True

        command, _, rest = line[1:].partition(" ")
        rest = rest.strip()
        session = self.session

        if command in ("quit", "exit"):
            return False
        elif command == "help":
            print(HELP)
        elif command == "voice":
            self.voice = self._build_voice_input()
            await self.voice.toggle()
            if self.voice.is_recording:
                print("[voice] recording... press Enter to stop")
        elif command == "speak":
            last = next((m for m in reversed(session.messages) if m.role == "assistant"), None)
            if last is not None:
                await session.speak(last)
        elif command == "new":
            session.new_chat()
            print("[new conversation]")
        elif command == "history":
            conversations = [c for c in session.conversations() if c.messages]
            self._listed = [c.id for c in conversations]
            for i, c in enumerate(conversations, 1):
                marker = "*" if c.id == session.current_conversation_id else " "
                print(f"{marker}{i:>3}. {c.title} ({len(c.messages)} messages)")
            if not conversations:
                print("No saved conversations.")
        elif command == "open":
            if session.select_conversation(self._conversation_id(rest) or ""):
                for m in session.messages:
                    print(f"{'you' if m.role == 'user' else 'kinora'}> {m.content}")
            else:
                print("No such conversation.")
        elif command == "delete":
            conversation_id = self._conversation_id(rest)
            if conversation_id:
                session.delete_conversation(conversation_id)
                print("[deleted]")
        elif command == "rename":
            target, _, title = rest.partition(" ")
            conversation_id = self._conversation_id(target)
            if conversation_id:
                session.rename_conversation(conversation_id, title)
        elif command in ("settings", "set"):
            self._edit(session.settings, rest, session.update_settings)
            if not rest:
                print("  voices: " + ", ".join(f"{name} ({label})" for name, label in VOICE_OPTIONS.items()))
        elif command == "persona":
            self._edit(session.persona, rest, session.update_persona)
        elif command == "usage":
            usage = session.storage.get_storage_usage()
            print(f"{format_bytes(usage['used'])} of {format_bytes(usage['quota'])} ({usage['percentage']:.1f}%)")
        elif command == "clear-data":
            session.storage.clear_all_data()
            session.load()
            print("[all data cleared]")
        else:
            print(f"Unknown command: /{command}")
        return True

    def _edit(self, obj, rest: str, update) -> None:
        key, _, value = rest.partition(" ")
        if not key:
            for k, v in asdict(obj).items():
                print(f"  {k} = {v!r}")
            return
        names = {f.name for f in fields(obj)}
        if key not in names:
            print(f"Unknown key '{key}'. Choose from: {', '.join(sorted(names))}")
            return
        try:
            update(**{key: _coerce(value.strip(), getattr(obj, key))})
        except ValueError as e:
            print(f"Invalid value: {e}")
            return
        if key == "autoSendEnabled" and isinstance(self.voice, ContinuousVoiceInput):
            self.voice.set_auto_send(self.session.settings.autoSendEnabled)

    async def run(self) -> None:
        self.session.load()
        print("Kinora. Type to chat, /help for commands.")
        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, input, "")
            except EOFError:
                break
            if not await self.handle(line):
                break
        if self.voice is not None:
            self.voice.cancel()
        self.session.playback.stop()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kinora language practice chat")
    parser.add_argument("--server", default=SERVER_URL, help="Kinora server base URL")
    parser.add_argument("--storage", default=DEFAULT_STORAGE_PATH, help="Path of the local JSON store")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


async def amain(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else os.getenv("KINORA_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s: %(message)s",
    )
    storage = KinoraStorage(JsonFileStore(args.storage))
    async with KinoraClient(args.server) as client:
        await TerminalApp(client, storage).run()


def main() -> None:
    try:
        asyncio.run(amain())
    except KeyboardInterrupt:
        print("Client stopped by user.")


if __name__ == "__main__":
    main()
