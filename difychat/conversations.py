"""
Conversation Mirror
===================
Local copy of an app's conversation list, kept in the ``conversationStore``
key so the list renders before the network answers.

Conversations are created by the server as a side effect of the first chat
message; locally they are only mirrored, updated and removed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .auth.credential_store import CredentialStore, StorageKeys
from .errors import StoreError

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    id: str
    name: str = ""
    updated_at: Optional[float] = None
    created_at: Optional[float] = None
    inputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.name or "New Conversation"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(raw["id"]),
            name=raw.get("name") or "",
            updated_at=raw.get("updated_at"),
            created_at=raw.get("created_at"),
            inputs=dict(raw.get("inputs") or {}),
        )


class ConversationMirror:
    """In-memory list + best-effort persistence."""

    def __init__(self, store: CredentialStore):
        self.store = store
        self.conversations: List[Conversation] = []
        self.current_id: Optional[str] = None

    async def load(self) -> List[Conversation]:
        try:
            raw = await self.store.get_item(StorageKeys.CONVERSATIONS)
            if raw:
                self.conversations = [
                    Conversation.from_dict(c) for c in json.loads(raw) if isinstance(c, dict) and c.get("id")
                ]
        except (StoreError, ValueError) as exc:
            logger.error(f"[CONVERSATIONS] Error loading persisted conversations: {exc}")
        return list(self.conversations)

    async def set_all(self, conversations: List[Conversation]) -> None:
        self.conversations = list(conversations)
        await self._persist()

    async def add(self, conversation: Conversation) -> None:
        self.conversations.insert(0, conversation)
        await self._persist()

    async def update(self, conversation_id: str, **changes) -> Optional[Conversation]:
        for conv in self.conversations:
            if conv.id == conversation_id:
                for key, value in changes.items():
                    if hasattr(conv, key):
                        setattr(conv, key, value)
                await self._persist()
                return conv
        return None

    async def remove(self, conversation_id: str) -> bool:
        before = len(self.conversations)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.current_id == conversation_id:
            self.current_id = None
        if len(self.conversations) == before:
            return False
        await self._persist()
        return True

    async def _persist(self) -> None:
        try:
            await self.store.set_item(
                StorageKeys.CONVERSATIONS,
                json.dumps([asdict(c) for c in self.conversations]),
            )
        except StoreError as exc:
            logger.error(f"[CONVERSATIONS] Error persisting conversations: {exc}")
