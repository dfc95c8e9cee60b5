"""
Configuration system — reads codeforge.json + .env
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


# ── JSON schema models ───────────────────────────────────────────────────────

class ProviderConfig(BaseModel):
    name: str
    type: str  # "anthropic" | "ollama" | "openai" | any OpenAI-compatible vendor
    model: Optional[str] = None
    models: list[str] = Field(default_factory=list)
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    token_limit: Optional[int] = None
    timeout_seconds: float = 120.0
    enabled: bool = True


class LLMConfig(BaseModel):
    max_tokens: int = 4096
    temperature: float = 0.7


class FilesystemToolConfig(BaseModel):
    enabled: bool = True
    max_file_size_mb: int = 10


class TerminalToolConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: int = 30
    blocked_patterns: list[str] = Field(default_factory=lambda: ["rm -rf /", "mkfs", ":(){"])


class TodoToolConfig(BaseModel):
    enabled: bool = True
    file: str = ".todos.json"  # relative to the project root


class ToolsConfig(BaseModel):
    root_path: str = "."
    filesystem: FilesystemToolConfig = Field(default_factory=FilesystemToolConfig)
    terminal: TerminalToolConfig = Field(default_factory=TerminalToolConfig)
    todo: TodoToolConfig = Field(default_factory=TodoToolConfig)


class AgentConfig(BaseModel):
    max_iterations: int = 20
    system_prompt: str = ""  # empty: built-in preamble
    memory_file: str = "CODEFORGE.md"


class PermissionsConfig(BaseModel):
    bypass_all: bool = False
    timeout_seconds: Optional[float] = 300.0


def _default_providers() -> list[ProviderConfig]:
    return [
        ProviderConfig(name="anthropic", type="anthropic", api_key_env="ANTHROPIC_API_KEY"),
        ProviderConfig(name="ollama", type="ollama", base_url="http://localhost:11434"),
    ]


class CodeForgeConfig(BaseModel):
    version: str = "1.0"
    default_provider: str = "anthropic"
    providers: list[ProviderConfig] = Field(default_factory=_default_providers)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    def get_provider(self, name: str) -> Optional[ProviderConfig]:
        for p in self.providers:
            if p.name == name:
                return p
        return None

    def get_provider_api_key(self, provider: ProviderConfig) -> Optional[str]:
        if provider.api_key_env:
            return os.environ.get(provider.api_key_env)
        return None

    def resolve_root_path(self) -> Path:
        return Path(self.tools.root_path).expanduser().resolve()


# ── App settings (from .env) ─────────────────────────────────────────────────

class AppSettings(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 8000
    config_path: str = "./codeforge.json"
    log_level: str = "INFO"

    model_config = {"env_prefix": "CODEFORGE_", "env_file": ".env", "extra": "ignore"}


# ── Singleton loaders ─────────────────────────────────────────────────────────

_config: Optional[CodeForgeConfig] = None
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def load_config(path: Optional[str] = None) -> CodeForgeConfig:
    global _config
    settings = get_settings()
    config_file = Path(path or settings.config_path)

    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        _config = CodeForgeConfig(**data)
    else:
        _config = CodeForgeConfig()

    return _config


def get_config() -> CodeForgeConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config
