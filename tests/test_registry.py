"""
Tests for the model registry.
"""

import pytest

from chatwire.errors import TransportFailure, UnknownModel
from chatwire.registry import FALLBACK_DEFAULT, FALLBACK_MODELS, ModelRegistry
from conftest import FakeTransport, Recorder


def make_registry(models, bus, **kwargs):
    return ModelRegistry(FakeTransport(models=models), bus, **kwargs)


@pytest.mark.asyncio
async def test_load_success_uses_declared_default(bus):
    payload = {
        "success": True,
        "models": {"qianwen": "Alibaba Qianwen", "deepseek": "DeepSeek"},
        "defaultModel": "deepseek",
    }
    registry = make_registry(payload, bus)
    result = await registry.load()

    assert result.ok
    assert not result.fallback
    assert registry.ready
    assert registry.current_code == "deepseek"
    assert list(registry.models) == ["qianwen", "deepseek"]
    assert registry.current.display_name == "DeepSeek"


@pytest.mark.asyncio
async def test_load_invalid_default_falls_back_to_first(bus):
    payload = {"success": True, "models": {"a": "A", "b": "B"}, "defaultModel": "zzz"}
    registry = make_registry(payload, bus)
    await registry.load()
    assert registry.current_code == "a"


@pytest.mark.asyncio
async def test_success_false_installs_fallback(bus):
    """success=false gives the built-in set and one models-loaded event."""
    rec = Recorder(bus)
    registry = make_registry({"success": False}, bus)
    result = await registry.load()

    assert result.fallback
    assert dict(registry.models) == FALLBACK_MODELS
    assert registry.current_code == FALLBACK_DEFAULT
    loaded = rec.of("models-loaded")
    assert len(loaded) == 1
    assert loaded[0].fallback is True
    assert loaded[0].default_code == "qianwen"


@pytest.mark.asyncio
async def test_transport_failure_installs_fallback(bus):
    registry = make_registry(TransportFailure("HTTP 500: Internal Server Error", status_code=500), bus)
    result = await registry.load()
    assert not result.ok
    assert "500" in result.error
    assert registry.ready
    assert "deepseek" in registry


@pytest.mark.asyncio
async def test_empty_models_installs_fallback(bus):
    registry = make_registry({"success": True, "models": {}}, bus)
    result = await registry.load()
    assert result.fallback
    assert len(registry) == len(FALLBACK_MODELS)


@pytest.mark.asyncio
async def test_non_object_payload_installs_fallback(bus):
    registry = make_registry(["qianwen"], bus)
    result = await registry.load()
    assert result.fallback


@pytest.mark.asyncio
async def test_custom_fallback_set(bus):
    registry = make_registry(
        {"success": False}, bus,
        fallback={"local": "Local model"}, fallback_default="missing",
    )
    await registry.load()
    assert dict(registry.models) == {"local": "Local model"}
    assert registry.current_code == "local"


@pytest.mark.asyncio
async def test_reload_emits_again(bus):
    rec = Recorder(bus)
    registry = make_registry({"success": True, "models": {"a": "A"}}, bus)
    await registry.load()
    await registry.load()
    assert rec.names.count("models-loaded") == 2


def test_not_ready_before_load(bus):
    registry = make_registry({"success": True, "models": {"a": "A"}}, bus)
    assert not registry.ready
    assert registry.current is None
    assert len(registry) == 0


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_set_current_model_publishes_change(bus):
    rec = Recorder(bus)
    registry = make_registry({"success": True, "models": {"a": "A", "b": "B"}}, bus)
    await registry.load()

    info = registry.set_current_model("b")
    assert info.code == "b"
    assert registry.current_code == "b"
    changed = rec.of("model-changed")
    assert len(changed) == 1
    assert (changed[0].old_code, changed[0].new_code, changed[0].new_name) == ("a", "b", "B")


@pytest.mark.asyncio
async def test_set_unknown_model_rejected(bus):
    registry = make_registry({"success": True, "models": {"a": "A"}}, bus)
    await registry.load()
    with pytest.raises(UnknownModel) as exc:
        registry.set_current_model("gpt-9")
    assert exc.value.message == "Unknown model: gpt-9"
    assert registry.current_code == "a"


@pytest.mark.asyncio
async def test_iteration_yields_model_info(bus):
    registry = make_registry({"success": True, "models": {"a": "A", "b": "B"}}, bus)
    await registry.load()
    assert [(m.code, m.display_name) for m in registry] == [("a", "A"), ("b", "B")]
