"""
In-memory conversation store. Each conversation owns an Orchestrator
(history, permission cache) bound to one registered provider.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from codeforge.agent.context import ContextBuilder, SessionFacts
from codeforge.agent.loop import Orchestrator
from codeforge.agent.permissions import PermissionGate
from codeforge.config import CodeForgeConfig
from codeforge.models.registry import ProviderRegistry
from codeforge.tools.base import build_tool_executor

logger = logging.getLogger(__name__)


def load_memory(root: Path, filename: str) -> str:
    """Contents of the project memory file, or "" when there is none."""
    if not filename:
        return ""
    path = root / filename
    if not path.is_file():
        return ""
    return path.read_text(encoding="utf-8", errors="replace")


@dataclass
class Conversation:
    id: str
    title: str
    provider: str
    model: str
    orchestrator: Orchestrator
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))

    def summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "provider": self.provider,
            "model": self.model,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "busy": self.orchestrator.busy,
        }

    def detail(self) -> dict:
        gate = self.orchestrator.gate
        return {
            **self.summary(),
            "bypass_permissions": gate.bypass_all,
            "pending_permissions": [r.model_dump(mode="json") for r in gate.pending()],
            "messages": [m.model_dump(mode="json") for m in self.orchestrator.history],
        }


class ConversationStore:
    def __init__(self, registry: ProviderRegistry, config: CodeForgeConfig):
        self.registry = registry
        self.config = config
        self._conversations: dict[str, Conversation] = {}

    def create(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        title: str = "New conversation",
        files: Optional[list[str]] = None,
    ) -> Conversation:
        """Create a conversation. Raises ValueError for an unknown provider."""
        adapter = self.registry.get(provider)
        provider_name = provider or self.registry.default or adapter.name
        model_name = model or adapter.default_model()

        root = self.config.resolve_root_path()
        facts = SessionFacts(
            provider=provider_name,
            model=model_name,
            root_path=str(root),
            files=files or [],
            memory=load_memory(root, self.config.agent.memory_file),
            system_prompt=self.config.agent.system_prompt,
        )
        gate = PermissionGate(
            bypass_all=self.config.permissions.bypass_all,
            timeout=self.config.permissions.timeout_seconds,
        )
        orchestrator = Orchestrator(
            adapter,
            gate,
            build_tool_executor(root, self.config.tools),
            facts,
            max_tokens=self.config.llm.max_tokens,
            temperature=self.config.llm.temperature,
            max_iterations=self.config.agent.max_iterations,
            context_builder=ContextBuilder(adapter.token_limit()),
        )

        conv = Conversation(
            id=str(uuid.uuid4()),
            title=title,
            provider=provider_name,
            model=model_name,
            orchestrator=orchestrator,
        )
        self._conversations[conv.id] = conv
        logger.info("Created conversation %s (%s/%s)", conv.id, provider_name, model_name)
        return conv

    def get(self, conv_id: str) -> Optional[Conversation]:
        return self._conversations.get(conv_id)

    def list(self) -> list[Conversation]:
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    async def delete(self, conv_id: str) -> bool:
        conv = self._conversations.pop(conv_id, None)
        if conv is None:
            return False
        await conv.orchestrator.cancel()
        return True
