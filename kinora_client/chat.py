from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from time import perf_counter
from typing import Callable, List, Optional

from .api import KinoraClient
from .playback import PlaybackManager
from .storage import (
    Conversation,
    KinoraStorage,
    Message,
    Persona,
    Settings,
    create_conversation,
    generate_conversation_title,
    generate_id,
    now_ms,
)
from .stream import StreamingReply, parse_reply

logger = logging.getLogger("kinora")

AUTO_PLAY_DEBOUNCE_S = float(os.getenv("KINORA_AUTO_PLAY_DEBOUNCE_S", "0.4"))

FALLBACK_REPLY = "Sorry, I'm having trouble responding right now. Please try again in a moment."


class ChatSession:
    """
    Turn-taking between the user, the chat stream and speech playback,
    persisted through KinoraStorage.
    """

    def __init__(
        self,
        client: KinoraClient,
        storage: KinoraStorage,
        playback: Optional[PlaybackManager] = None,
        auto_play: bool = True,
        auto_play_debounce: float = AUTO_PLAY_DEBOUNCE_S,
        on_update: Optional[Callable[[List[Message]], None]] = None,
    ):
        self.client = client
        self.storage = storage
        self.playback = playback if playback is not None else PlaybackManager(self.synthesize)
        self.auto_play = auto_play
        self.auto_play_debounce = auto_play_debounce
        self.on_update = on_update

        self.settings = Settings()
        self.persona = Persona()
        self.messages: List[Message] = []
        self.current_conversation_id: Optional[str] = None
        self.is_loading = False
        self._conversation: Optional[Conversation] = None
        # Conversation the in-flight reply will be saved to; cleared if it is deleted.
        self._streaming: Optional[Conversation] = None
        self._auto_play_timer: Optional[asyncio.TimerHandle] = None
        self._auto_play_task: Optional[asyncio.Task] = None

    def load(self) -> None:
        self.settings = self.storage.load_settings()
        self.persona = self.storage.load_persona()
        conversation_id = self.storage.get_current_conversation_id()
        conversation = self.storage.load_conversation(conversation_id) if conversation_id else None
        self._set_conversation(conversation)

    def _set_conversation(self, conversation: Optional[Conversation]) -> None:
        self._conversation = conversation
        self.current_conversation_id = conversation.id if conversation else None
        self.messages = list(conversation.messages) if conversation else []
        self._notify()

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.messages)

    async def synthesize(self, text: str) -> bytes:
        return await self.client.fetch_speech(
            text,
            voice=self.settings.selectedVoice,
            rate=self.settings.speechRate,
            pitch=self.settings.speechPitch,
        )

    # Conversations

    def conversations(self) -> List[Conversation]:
        return self.storage.get_conversation_list()

    def new_chat(self) -> None:
        """Start fresh; the conversation itself is created on the next send."""
        self._cancel_auto_play()
        self.playback.stop()
        self.storage.set_current_conversation_id(None)
        self._set_conversation(None)

    def select_conversation(self, conversation_id: str) -> bool:
        conversation = self.storage.load_conversation(conversation_id)
        if conversation is None:
            return False
        self._cancel_auto_play()
        self.playback.stop()
        self.storage.set_current_conversation_id(conversation.id)
        self._set_conversation(conversation)
        return True

    def delete_conversation(self, conversation_id: str) -> None:
        self.storage.delete_conversation(conversation_id)
        if self._streaming is not None and self._streaming.id == conversation_id:
            self._streaming = None
        if conversation_id == self.current_conversation_id:
            self._cancel_auto_play()
            self.playback.stop()
            self.storage.set_current_conversation_id(None)
            self._set_conversation(None)

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        title = title.strip()
        if not title:
            return
        self.storage.rename_conversation(conversation_id, title)
        if self._conversation is not None and self._conversation.id == conversation_id:
            self._conversation.title = title

    # Preferences

    def update_settings(self, **changes) -> Settings:
        self.settings = replace(self.settings, **changes)
        self.storage.save_settings(self.settings)
        return self.settings

    def update_persona(self, **changes) -> Persona:
        self.persona = replace(self.persona, **changes)
        self.storage.save_persona(self.persona)
        return self.persona

    # Turn taking

    def _persist(self, conversation: Conversation, messages: List[Message]) -> None:
        conversation.messages = list(messages)
        conversation.title = generate_conversation_title(conversation.messages)
        conversation.updatedAt = now_ms()
        self.storage.save_conversation(conversation)

    async def send(self, text: str) -> Optional[Message]:
        """
        Send a user message and stream the assistant reply into the message list.
        Returns the assistant message, or None when nothing was sent.
        """
        text = (text or "").strip()
        if not text or self.is_loading:
            return None

        self._cancel_auto_play()
        self.playback.stop()

        if self._conversation is None:
            conversation = create_conversation()
            self._conversation = conversation
            self.current_conversation_id = conversation.id
            self.storage.set_current_conversation_id(conversation.id)

        # The reply belongs to this conversation even if the user switches away mid-stream.
        conversation, messages = self._conversation, self.messages
        self._streaming = conversation

        messages.append(Message(id=generate_id("msg"), role="user", content=text))
        history = list(messages)
        assistant = Message(id=generate_id("msg"), role="assistant", content="")
        messages.append(assistant)
        self.is_loading = True
        self._notify()

        reply = StreamingReply()
        start = perf_counter()
        failed = False
        try:
            async for chunk in self.client.stream_chat(history, self.settings, self.persona):
                reply.feed(chunk)
                assistant.content = reply.content
                if self._conversation is conversation:
                    self._notify()
            assistant.content = reply.close()
            if not assistant.content.strip():
                raise RuntimeError("Empty reply")
            logger.info(f"Reply streamed in {(perf_counter() - start) * 1000:.0f} ms ({len(assistant.content)} chars)")
        except Exception as e:
            logger.error(f"Chat request failed: {e}")
            assistant.content = FALLBACK_REPLY
            failed = True
        finally:
            self.is_loading = False
            if self._streaming is conversation:
                self._persist(conversation, messages)
            self._streaming = None
            self._notify()

        if self.auto_play and not failed and self._conversation is conversation:
            self._schedule_auto_play(assistant)
        return assistant

    def spoken_text(self, message: Message) -> str:
        return parse_reply(message.content).answer

    async def speak(self, message: Message) -> bool:
        """Toggle playback for one assistant message."""
        return await self.playback.toggle(message.id, self.spoken_text(message))

    def _schedule_auto_play(self, message: Message) -> None:
        self._cancel_auto_play()
        loop = asyncio.get_running_loop()
        self._auto_play_timer = loop.call_later(self.auto_play_debounce, self._start_auto_play, message)

    def _start_auto_play(self, message: Message) -> None:
        self._auto_play_timer = None
        self._auto_play_task = asyncio.ensure_future(self.playback.play(message.id, self.spoken_text(message)))

    def _cancel_auto_play(self) -> None:
        if self._auto_play_timer is not None:
            self._auto_play_timer.cancel()
            self._auto_play_timer = None

    async def wait_auto_play(self) -> None:
        """Wait for a scheduled auto-playback to be handed to the player."""
        while self._auto_play_timer is not None:
            await asyncio.sleep(self.auto_play_debounce / 4 or 0.01)
        if self._auto_play_task is not None:
            await self._auto_play_task
