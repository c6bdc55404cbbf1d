import pytest

from pipeline.config.settings import Settings
from pipeline.v1.core.exceptions import ConfigurationError
from pipeline.v1.core.registries import (
    JobRegistry,
    Registry,
    job_registry,
    renderer_registry,
)
from pipeline.v1.infra.jobs import registry_init
from pipeline.v1.infra.jobs.registry_init import init_registries, register_renderers
from pipeline.v1.infra.jobs.renderers import copy_render, stub_render


class MockHandler:
    async def handle(self, job, ctx):
        return {"handled": job}


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    # Test empty registry
    assert registry.list() == []

    # Test register and get
    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert registry.has("test_impl")

    # Test KeyError for missing implementation
    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_overwrites_implementation():
    """Test that registering the same name overwrites previous implementation."""
    registry = Registry[str]("Test")

    registry.register("same_name", "first_value")
    registry.register("same_name", "second_value")

    assert registry.get("same_name") == "second_value"
    assert registry.list() == ["same_name"]


def test_frozen_registry_rejects_changes():
    registry = Registry[str]("Test")
    registry.register("kept", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="frozen"):
        registry.register("late", "value")
    with pytest.raises(RuntimeError, match="frozen"):
        registry.clear()
    assert registry.get("kept") == "value"


async def test_job_registry_with_mock_handler():
    registry = JobRegistry()
    registry.register("noop", MockHandler())

    handler = registry.get("noop")
    assert await handler.handle(1, None) == {"handled": 1}


def test_init_registries_registers_everything():
    init_registries(Settings())

    assert {
        "generate_derivatives",
        "upload_postprocess",
        "maintenance",
        "folder_discovery",
    } <= set(job_registry.list())
    assert renderer_registry.get("stub") is stub_render
    assert renderer_registry.get("copy") is copy_render


def test_init_registries_requires_known_renderer(monkeypatch):
    monkeypatch.setattr(registry_init, "register_renderers", lambda: None)
    renderer_registry.clear()
    try:
        with pytest.raises(ConfigurationError, match="stub"):
            registry_init.init_registries(Settings())
    finally:
        register_renderers()


def test_stub_renderer_writes_nothing(tmp_path):
    target = tmp_path / "thumb.jpg"
    result = stub_render(
        str(tmp_path / "src.jpg"), [{"name": "thumbnail", "path": str(target)}]
    )

    assert result == [{"name": "thumbnail", "path": str(target), "written": False}]
    assert not target.exists()


def test_copy_renderer_writes_targets(tmp_path):
    source = tmp_path / "src.jpg"
    source.write_bytes(b"jpeg-bytes")
    target = tmp_path / "out" / "thumbnail" / "src.jpg"

    result = copy_render(str(source), [{"name": "thumbnail", "path": str(target)}])

    assert target.read_bytes() == b"jpeg-bytes"
    assert result[0]["written"] is True
    assert result[0]["bytes"] == len(b"jpeg-bytes")
