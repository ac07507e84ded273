"""
Local persistence for settings, persona and conversation history.

Everything lives in one JSON document keyed like browser local storage. When
the store cannot be read or written (read-only home, corrupt file) every
function degrades to a no-op or returns defaults instead of raising.
"""
from __future__ import annotations

import json
import logging
import os
import random
import string
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("kinora")

DEFAULT_STORAGE_PATH = os.getenv(
    "KINORA_STORAGE_PATH",
    str(Path.home() / ".kinora" / "storage.json"),
)

STORAGE_KEYS = {
    "SETTINGS": "kinora-settings",
    "PERSONA": "kinora-persona",
    "CONVERSATIONS": "kinora-conversations",
    "CURRENT_CONVERSATION": "kinora-current-conversation",
}

# Approximate per-origin quota most browsers grant local storage.
STORAGE_QUOTA = 5 * 1024 * 1024

TITLE_MAX_CHARS = 40
NEW_CONVERSATION_TITLE = "New Conversation"

Role = Literal["user", "assistant"]
ProficiencyLevel = Literal["beginner", "intermediate", "advanced"]

# Fields restricted to a fixed set of lower-case values.
FIELD_CHOICES = {
    "proficiencyLevel": ("beginner", "intermediate", "advanced"),
    "sttMode": ("web-speech", "whisper"),
    "whisperModel": ("tiny", "small"),
}

# Edge neural voices offered in settings; any other Edge voice name also works.
VOICE_OPTIONS = {
    "en-US-JennyNeural": "Jenny (US)",
    "en-US-AnaNeural": "Ana (US)",
    "en-US-AriaNeural": "Aria (US)",
    "en-US-MichelleNeural": "Michelle (US)",
    "en-US-AvaNeural": "Ava (US)",
}


def normalize_choice(name: str, value) -> str:
    """Lower-cased `value` for a restricted field; ValueError if it is not one of the choices."""
    choices = FIELD_CHOICES[name]
    normalized = str(value).strip().lower()
    if normalized not in choices:
        raise ValueError(f"{name} must be one of: {', '.join(choices)} (got {value!r})")
    return normalized


def _normalize_choices(obj) -> None:
    for f in fields(obj):
        if f.name in FIELD_CHOICES:
            setattr(obj, f.name, normalize_choice(f.name, getattr(obj, f.name)))


@dataclass
class Settings:
    autoSendEnabled: bool = True
    selectedVoice: str = "en-US-JennyNeural"
    speechRate: int = 0
    speechPitch: int = 0
    targetLanguage: str = "English"
    nativeLanguage: str = "Korean"
    autoHideContent: bool = True
    sttMode: str = "web-speech"
    whisperModel: str = "small"

    def __post_init__(self):
        _normalize_choices(self)


@dataclass
class Persona:
    name: str = ""
    learningGoals: str = ""
    proficiencyLevel: ProficiencyLevel = "beginner"
    customContext: str = ""

    def __post_init__(self):
        _normalize_choices(self)


@dataclass
class Message:
    id: str
    role: Role
    content: str


@dataclass
class Conversation:
    id: str
    title: str = NEW_CONVERSATION_TITLE
    messages: List[Message] = field(default_factory=list)
    createdAt: int = 0
    updatedAt: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title", NEW_CONVERSATION_TITLE),
            messages=[Message(m["id"], m["role"], m.get("content", "")) for m in data.get("messages", [])],
            createdAt=int(data.get("createdAt", 0)),
            updatedAt=int(data.get("updatedAt", 0)),
        )


def _merge_with_defaults(cls, stored: dict):
    """Stored values over the defaults of `cls`; unknown keys and invalid values are dropped."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        if f.name not in stored:
            continue
        value = stored[f.name]
        expected = type(getattr(defaults, f.name))
        if type(value) is not expected:
            logger.warning(f"Ignoring stored {f.name}={value!r}: expected {expected.__name__}")
            continue
        if f.name in FIELD_CHOICES:
            try:
                value = normalize_choice(f.name, value)
            except ValueError as e:
                logger.warning(f"Ignoring stored {f.name}: {e}")
                continue
        values[f.name] = value
    return cls(**values)


def now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix(length: int = 7) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_id(prefix: str) -> str:
    return f"{prefix}_{now_ms()}_{_random_suffix()}"


def generate_conversation_title(messages: List[Message]) -> str:
    """Title from the first user message, at most 40 characters."""
    user_message = next((m for m in messages if m.role == "user"), None)
    if user_message is None:
        return NEW_CONVERSATION_TITLE

    content = user_message.content.strip()
    if len(content) <= TITLE_MAX_CHARS:
        return content
    return content[: TITLE_MAX_CHARS - 3] + "..."


def create_conversation() -> Conversation:
    ts = now_ms()
    return Conversation(id=generate_id("conv"), createdAt=ts, updatedAt=ts)


def format_bytes(num_bytes: float) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.2f} MB"


class JsonFileStore:
    """
    Minimal key/value store over a JSON file, mirroring the local storage API.
    Values are strings; I/O errors propagate as OSError.
    """

    def __init__(self, path: str | os.PathLike = DEFAULT_STORAGE_PATH):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class KinoraStorage:
    def __init__(self, store: Optional[JsonFileStore] = None):
        self.store = store if store is not None else JsonFileStore()

    def is_available(self) -> bool:
        test_key = "__kinora_test__"
        try:
            self.store.set_item(test_key, test_key)
            self.store.remove_item(test_key)
            return True
        except (OSError, ValueError):
            return False

    def _load_json(self, key: str):
        try:
            stored = self.store.get_item(key)
            return json.loads(stored) if stored else None
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read '{key}' from storage: {e}")
            return None

    def _save_json(self, key: str, value) -> None:
        if not self.is_available():
            return
        try:
            self.store.set_item(key, json.dumps(value, ensure_ascii=False))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to write '{key}' to storage: {e}")

    # Settings

    def save_settings(self, settings: Settings) -> None:
        self._save_json(STORAGE_KEYS["SETTINGS"], asdict(settings))

    def load_settings(self) -> Settings:
        stored = self._load_json(STORAGE_KEYS["SETTINGS"])
        if not isinstance(stored, dict):
            return Settings()
        return _merge_with_defaults(Settings, stored)

    # Persona

    def save_persona(self, persona: Persona) -> None:
        self._save_json(STORAGE_KEYS["PERSONA"], asdict(persona))

    def load_persona(self) -> Persona:
        stored = self._load_json(STORAGE_KEYS["PERSONA"])
        if not isinstance(stored, dict):
            return Persona()
        return _merge_with_defaults(Persona, stored)

    # Conversations

    def get_conversation_list(self) -> List[Conversation]:
        """All saved conversations, most recently updated first."""
        stored = self._load_json(STORAGE_KEYS["CONVERSATIONS"])
        if not isinstance(stored, list):
            return []
        try:
            conversations = [Conversation.from_dict(c) for c in stored]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed conversation list: {e}")
            return []
        return sorted(conversations, key=lambda c: c.updatedAt, reverse=True)

    def _save_conversation_list(self, conversations: List[Conversation]) -> None:
        self._save_json(STORAGE_KEYS["CONVERSATIONS"], [c.to_dict() for c in conversations])

    def save_conversation(self, conversation: Conversation) -> None:
        conversations = self.get_conversation_list()
        for i, existing in enumerate(conversations):
            if existing.id == conversation.id:
                conversations[i] = conversation
                break
        else:
            conversations.append(conversation)
        self._save_conversation_list(conversations)

    def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return next((c for c in self.get_conversation_list() if c.id == conversation_id), None)

    def delete_conversation(self, conversation_id: str) -> None:
        if not self.is_available():
            return
        conversations = [c for c in self.get_conversation_list() if c.id != conversation_id]
        self._save_conversation_list(conversations)

        if self.get_current_conversation_id() == conversation_id:
            self.set_current_conversation_id(None)

    def rename_conversation(self, conversation_id: str, new_title: str) -> None:
        conversations = self.get_conversation_list()
        for conversation in conversations:
            if conversation.id == conversation_id:
                conversation.title = new_title
                conversation.updatedAt = now_ms()
                self._save_conversation_list(conversations)
                return

    def get_current_conversation_id(self) -> Optional[str]:
        try:
            return self.store.get_item(STORAGE_KEYS["CURRENT_CONVERSATION"])
        except (OSError, ValueError):
            return None

    def set_current_conversation_id(self, conversation_id: Optional[str]) -> None:
        if not self.is_available():
            return
        key = STORAGE_KEYS["CURRENT_CONVERSATION"]
        try:
            if conversation_id:
                self.store.set_item(key, conversation_id)
            else:
                self.store.remove_item(key)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to update current conversation: {e}")

    # Housekeeping

    def get_storage_usage(self) -> Dict[str, float]:
        """Approximate bytes used, counting two bytes per character like UTF-16 storage."""
        total = 0
        for key in STORAGE_KEYS.values():
            try:
                item = self.store.get_item(key)
            except (OSError, ValueError):
                item = None
            if item:
                total += len(item) * 2
        return {"used": total, "quota": STORAGE_QUOTA, "percentage": total / STORAGE_QUOTA * 100}

    def clear_all_data(self) -> None:
        if not self.is_available():
            return
        for key in STORAGE_KEYS.values():
            try:
                self.store.remove_item(key)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to clear '{key}': {e}")
