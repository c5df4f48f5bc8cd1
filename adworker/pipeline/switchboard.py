"""
Model switchboard: stage → active model.

Adapters are registered once at process start. Which one serves a stage is
read from the `model_configs` table on every resolve, so an operator can
swap models (or bump a priority) without a restart.
"""

import asyncio
import logging
from typing import Iterable, NamedTuple, Optional

from .adapters import ModelAdapter, build_default_adapters
from .errors import ModelNotConfiguredError, ModelStageMismatchError, UnregisteredModelError
from .models import ModelConfig, Stage

logger = logging.getLogger(__name__)

MODEL_CONFIGS_TABLE = "model_configs"


class ResolvedModel(NamedTuple):
    adapter: ModelAdapter
    config: ModelConfig


# ── Config store ─────────────────────────────────────────────────────────────

def model_config_from_row(row: dict) -> ModelConfig:
    return ModelConfig(
        id=str(row["id"]),
        stage=row["agent_type"],
        model_name=row["model_name"],
        is_active=row.get("is_active", True),
        priority=row.get("priority") or 0,
        config=row.get("config") or {},
        fallback_model_id=row.get("fallback_model_id"),
    )


class SupabaseModelConfigStore:
    def __init__(self, client_factory=None):
        if client_factory is None:
            from adworker.supabase_client import get_service_client
            client_factory = get_service_client
        self._client_factory = client_factory

    async def list_active(self, stage: Stage) -> list[ModelConfig]:
        def _query():
            return (
                self._client_factory()
                .table(MODEL_CONFIGS_TABLE)
                .select("*")
                .eq("agent_type", stage.value)
                .eq("is_active", True)
                .order("priority", desc=True)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        return [model_config_from_row(row) for row in result.data]


# ── Switchboard ──────────────────────────────────────────────────────────────

class ModelSwitchboard:
    def __init__(self, config_store, adapters: Optional[Iterable[ModelAdapter]] = None):
        self.config_store = config_store
        if adapters is None:
            adapters = build_default_adapters()
        self._registry: dict[str, ModelAdapter] = {a.model_name: a for a in adapters}

    def available_models(self) -> list[dict]:
        return [
            {"model_name": name, "stage": adapter.stage.value, "adapter": type(adapter).__name__}
            for name, adapter in sorted(self._registry.items())
        ]

    async def resolve(self, stage: Stage) -> ResolvedModel:
        """
        Return the adapter and config for the highest-priority active model
        configured for `stage`.

        Raises ModelNotConfiguredError, UnregisteredModelError or
        ModelStageMismatchError. None of these are worth retrying.
        """
        configs = [c for c in await self.config_store.list_active(stage) if c.is_active]
        if not configs:
            raise ModelNotConfiguredError(stage)

        # Stable on ties: first row returned wins.
        config = max(configs, key=lambda c: c.priority)

        adapter = self._registry.get(config.model_name)
        if adapter is None:
            raise UnregisteredModelError(config.model_name)
        if adapter.stage != stage:
            raise ModelStageMismatchError(config.model_name, stage, adapter.stage)

        logger.debug(f"Resolved {stage.value} → {config.model_name} (config {config.id}, priority {config.priority})")
        return ResolvedModel(adapter, config)
