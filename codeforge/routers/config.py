"""
Config API router.
GET  /config         — return current config (without secret keys)
GET  /config/models  — list models of every registered provider
"""
from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(prefix="/config", tags=["config"])


@router.get("")
async def read_config(request: Request):
    cfg = request.app.state.config
    safe_providers = [
        {
            "name": p.name,
            "type": p.type,
            "model": p.model,
            "base_url": p.base_url,
            "token_limit": p.token_limit,
            "enabled": p.enabled,
            "has_api_key": bool(cfg.get_provider_api_key(p)),
        }
        for p in cfg.providers
    ]
    return {
        "version": cfg.version,
        "default_provider": cfg.default_provider,
        "providers": safe_providers,
        "llm": cfg.llm.model_dump(),
        "agent": cfg.agent.model_dump(),
        "permissions": cfg.permissions.model_dump(),
        "tools": cfg.tools.model_dump(),
    }


@router.get("/models")
async def list_models(request: Request):
    registry = request.app.state.registry
    by_provider = registry.available_models()
    return {
        "models": [m.model_dump() for models in by_provider.values() for m in models],
        "providers": registry.names(),
        "default_provider": registry.default,
    }
