"""
Conversation Store

Chat history and per-user context, keyed by handle (phone number or email).

Storage: a single JSON file, written atomically (temp file + rename).
Default location: ~/.flip/conversations.json
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 100


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class Conversation:
    """One user's stored history."""
    handle: str
    messages: list = field(default_factory=list)
    context: dict = field(default_factory=dict)
    last_activity: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "handle": self.handle,
            "messages": self.messages,
            "context": self.context,
            "last_activity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            handle=data["handle"],
            messages=list(data.get("messages") or []),
            context=dict(data.get("context") or {}),
            last_activity=data.get("last_activity") or _now(),
        )


class ConversationStore:
    """
    JSON file persistence for conversations.

    The whole file is loaded on first use and kept in memory; every
    mutation rewrites it atomically.
    """

    def __init__(self, path: str = None, max_messages: int = DEFAULT_MAX_MESSAGES):
        self.path = Path(path or os.path.expanduser("~/.flip/conversations.json"))
        self.max_messages = max_messages
        self._conversations: dict[str, Conversation] | None = None

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> dict[str, Conversation]:
        if self._conversations is not None:
            return self._conversations

        self._conversations = {}
        if not self.path.exists():
            return self._conversations

        try:
            with open(self.path) as f:
                data = json.load(f)
            self._conversations = {
                handle: Conversation.from_dict(conv) for handle, conv in data.items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            # Corrupted file - start fresh but keep backup
            logger.warning("Conversation store %s is unreadable (%s), starting empty", self.path, e)
            self.path.rename(self.path.with_suffix(".json.bak"))
            self._conversations = {}

        return self._conversations

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {handle: conv.to_dict() for handle, conv in self._load().items()}

        temp_file = self.path.with_suffix(".json.tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2)
        temp_file.rename(self.path)

    # -------------------------------------------------------------------------
    # API
    # -------------------------------------------------------------------------

    def get_conversation(self, handle: str) -> Conversation:
        """Get a user's conversation, or an empty one (not persisted)."""
        conv = self._load().get(handle)
        if conv is None:
            return Conversation(handle=handle)
        return conv

    def save_conversation(self, handle: str, messages: list, context: dict = None) -> Conversation:
        conv = Conversation(
            handle=handle,
            messages=list(messages)[-self.max_messages:],
            context=dict(context or {}),
        )
        self._load()[handle] = conv
        self._save()
        return conv

    def add_message(
        self,
        handle: str,
        role: str,
        content: str,
        tool_calls: list = None,
        tool_results: list = None,
    ) -> Conversation:
        """Append a message, keeping only the most recent max_messages."""
        conv = self.get_conversation(handle)

        message = {"role": role, "content": content, "timestamp": _now()}
        if tool_calls:
            message["tool_calls"] = tool_calls
        if tool_results:
            message["tool_results"] = tool_results

        logger.debug("Adding %s message for %s: %r", role, handle, content[:50])
        return self.save_conversation(handle, conv.messages + [message], conv.context)

    def update_context(self, handle: str, new_context: dict) -> Conversation:
        """Shallow-merge keys into the user's context."""
        conv = self.get_conversation(handle)
        return self.save_conversation(handle, conv.messages, {**conv.context, **new_context})

    def clear_conversation(self, handle: str) -> bool:
        """Delete a user's history. Returns True if anything was removed."""
        conversations = self._load()
        if handle not in conversations:
            return False
        del conversations[handle]
        self._save()
        logger.info("Cleared conversation for %s", handle)
        return True

    def get_recent_conversations(self, limit: int = 10) -> list[dict]:
        """Summaries of the most recently active conversations, newest first."""
        convs = sorted(self._load().values(), key=lambda c: c.last_activity, reverse=True)
        return [
            {
                "handle": c.handle,
                "last_activity": c.last_activity,
                "context": c.context,
                "message_count": len(c.messages),
            }
            for c in convs[:limit]
        ]

    def get_stats(self) -> dict:
        convs = list(self._load().values())
        total_messages = sum(len(c.messages) for c in convs)
        return {
            "total_conversations": len(convs),
            "total_messages": total_messages,
            "avg_messages": round(total_messages / len(convs)) if convs else 0,
            "path": str(self.path),
        }
