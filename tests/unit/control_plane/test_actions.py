"""Unit tests for the symbolic action registry."""

from __future__ import annotations

import pytest

from shipyard.control_plane.actions import ActionRegistry
from shipyard.domain.errors import DefinitionError


@pytest.mark.unit
def test_registry_resolves_registered_actions() -> None:
    registry = ActionRegistry({"docker-login": ["sh", "-c", "docker login"], "noop": ("true",)})

    assert registry.resolve("docker-login") == ("sh", "-c", "docker login")
    assert registry.names() == ("docker-login", "noop")
    assert list(registry) == ["docker-login", "noop"]
    assert "noop" in registry
    assert len(registry) == 2


@pytest.mark.unit
def test_unknown_action_is_a_definition_error_with_path() -> None:
    registry = ActionRegistry()

    with pytest.raises(DefinitionError) as exc_info:
        registry.resolve("kubectl-apply", path="jobs.deploy.steps[0].uses")

    assert exc_info.value.path == "jobs.deploy.steps[0].uses"
    assert "kubectl-apply" in str(exc_info.value)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("name", "argv"),
    [
        ("", ["true"]),
        ("login", "docker login"),
        ("login", []),
        ("login", ["docker", ""]),
    ],
)
def test_register_rejects_invalid_entries(name: str, argv: object) -> None:
    with pytest.raises(ValueError):
        ActionRegistry().register(name, argv)  # type: ignore[arg-type]


@pytest.mark.unit
def test_register_rejects_duplicates() -> None:
    registry = ActionRegistry({"noop": ["true"]})
    with pytest.raises(ValueError, match="already registered"):
        registry.register("noop", ["false"])
