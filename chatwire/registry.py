"""
Model registry — which backend models the user can pick.

load() never fails: if the backend can't be reached or returns garbage, the
built-in fallback set is installed and the registry is still usable. Chat is
never blocked on the registry.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from chatwire.errors import UnknownModel
from chatwire.events import EventBus, ModelChanged, ModelsLoaded
from chatwire.models import ModelInfo
from chatwire.transport import BaseTransport

logger = logging.getLogger(__name__)

FALLBACK_MODELS: dict[str, str] = {
    "qianwen": "Alibaba Qianwen",
    "xinghuo": "iFlytek Spark",
    "doubao": "Doubao",
    "deepseek": "DeepSeek",
}
FALLBACK_DEFAULT = "qianwen"


@dataclass
class RegistryLoadResult:
    """Outcome of a registry load. ok=False means the fallback set was installed."""
    ok: bool
    models: dict[str, str] = field(default_factory=dict)
    default_code: str = ""
    error: str = ""

    @property
    def fallback(self) -> bool:
        return not self.ok


class ModelRegistry:
    """Ordered code -> display name mapping plus the current selection."""

    def __init__(
        self,
        transport: BaseTransport,
        bus: EventBus,
        fallback: Mapping[str, str] | None = None,
        fallback_default: str | None = None,
    ):
        self.transport = transport
        self.bus = bus
        self.fallback = dict(fallback or FALLBACK_MODELS)
        if not self.fallback:
            raise ValueError("Fallback model set must contain at least one model")
        self.fallback_default = (
            fallback_default if fallback_default in self.fallback else next(iter(self.fallback))
        )
        self._models: dict[str, str] = {}
        self._current: str | None = None
        self.ready = False

    # -- read side -------------------------------------------------------------

    @property
    def models(self) -> Mapping[str, str]:
        return MappingProxyType(self._models)

    @property
    def current_code(self) -> str | None:
        return self._current

    @property
    def current(self) -> ModelInfo | None:
        if self._current is None:
            return None
        return ModelInfo(self._current, self._models.get(self._current, self._current))

    def __contains__(self, code: object) -> bool:
        return code in self._models

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self):
        return iter([ModelInfo(code, name) for code, name in self._models.items()])

    # -- loading ---------------------------------------------------------------

    @staticmethod
    def _parse(payload) -> tuple[dict[str, str], str | None]:
        """Validate a registry payload. Raises ValueError when it is unusable."""
        if not isinstance(payload, dict):
            raise ValueError("Registry payload is not a JSON object")
        if not payload.get("success"):
            raise ValueError("Registry reported success=false")
        models = payload.get("models")
        if not isinstance(models, dict) or not models:
            raise ValueError("Registry payload has no models")
        parsed = {str(code): str(name) for code, name in models.items()}
        default = payload.get("defaultModel")
        return parsed, str(default) if default is not None else None

    def _install(self, models: dict[str, str], default: str) -> None:
        # Swap whole mappings so readers never see a half-built registry
        self._models = models
        self._current = default
        self.ready = True

    async def load(self) -> RegistryLoadResult:
        """Fetch the registry. Emits models-loaded exactly once per call."""
        try:
            payload = await self.transport.fetch_models()
            models, declared = self._parse(payload)
        except Exception as e:
            logger.warning("Failed to load model registry, using built-in models: %s", e)
            models = dict(self.fallback)
            self._install(models, self.fallback_default)
            result = RegistryLoadResult(
                ok=False, models=dict(models), default_code=self.fallback_default,
                error=str(e) or e.__class__.__name__,
            )
        else:
            default = declared if declared in models else next(iter(models))
            self._install(models, default)
            logger.info("Loaded %d models (default: %s)", len(models), default)
            result = RegistryLoadResult(ok=True, models=dict(models), default_code=default)

        self.bus.publish(ModelsLoaded(
            registry=MappingProxyType(dict(self._models)),
            default_code=result.default_code,
            fallback=result.fallback,
        ))
        return result

    def set_current_model(self, code: str) -> ModelInfo:
        """Switch the active model. Conversation state is untouched."""
        if code not in self._models:
            raise UnknownModel(code)
        old, self._current = self._current, code
        info = ModelInfo(code, self._models[code])
        logger.info("Switched model: %s -> %s (%s)", old, code, info.display_name)
        self.bus.publish(ModelChanged(old_code=old, new_code=code, new_name=info.display_name))
        return info
