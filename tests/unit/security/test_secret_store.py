"""Unit tests for secret store adapters."""

from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.domain.errors import ErrorKind, SecretNotFoundError
from shipyard.security.redaction import REDACTED_VALUE
from shipyard.security.secret_store import (
    ChainSecretStore,
    EnvSecretStore,
    FileSecretStore,
    MappingSecretStore,
    SecretStore,
    SecretValue,
)


@pytest.mark.unit
def test_secret_value_never_renders_plaintext() -> None:
    value = SecretValue("REGISTRY_PASSWORD", "hunter2-hunter2")

    assert "hunter2" not in repr(value)
    assert str(value) == REDACTED_VALUE
    assert f"{value}" == REDACTED_VALUE
    assert value.reveal() == "hunter2-hunter2"
    assert value == SecretValue("REGISTRY_PASSWORD", "hunter2-hunter2")


@pytest.mark.unit
def test_mapping_store_resolves_and_rejects_unknown() -> None:
    store = MappingSecretStore({"REGISTRY_PASSWORD": "pw"})

    assert store.resolve("REGISTRY_PASSWORD").reveal() == "pw"
    assert "REGISTRY_PASSWORD" in store
    with pytest.raises(SecretNotFoundError) as exc_info:
        store.resolve("KUBE_CONFIG")
    assert exc_info.value.name == "KUBE_CONFIG"
    assert exc_info.value.kind is ErrorKind.SECRET_NOT_FOUND


@pytest.mark.unit
def test_env_store_uses_prefix() -> None:
    store = EnvSecretStore(prefix="CI_SECRET_", environ={"CI_SECRET_TOKEN": "t0k3n", "TOKEN": "wrong"})

    assert store.resolve("TOKEN").reveal() == "t0k3n"
    with pytest.raises(SecretNotFoundError):
        store.resolve("OTHER")


@pytest.mark.unit
def test_file_store_reads_one_file_per_secret(tmp_path: Path) -> None:
    (tmp_path / "KUBE_CONFIG").write_text("apiVersion: v1\n", encoding="utf-8")
    store = FileSecretStore(tmp_path)

    assert store.resolve("KUBE_CONFIG").reveal() == "apiVersion: v1"
    with pytest.raises(SecretNotFoundError):
        store.resolve("MISSING")


@pytest.mark.unit
def test_file_store_refuses_path_traversal(tmp_path: Path) -> None:
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()
    (tmp_path / "outside").write_text("nope", encoding="utf-8")
    store = FileSecretStore(secrets_dir)

    for name in ("../outside", "..", "a/b"):
        with pytest.raises(SecretNotFoundError):
            store.resolve(name)


@pytest.mark.unit
def test_chain_store_first_declaring_store_wins() -> None:
    chain = ChainSecretStore(
        [
            MappingSecretStore({"A": "from-first"}),
            MappingSecretStore({"A": "from-second", "B": "only-second"}),
        ]
    )

    assert chain.resolve("A").reveal() == "from-first"
    assert chain.resolve("B").reveal() == "only-second"
    with pytest.raises(SecretNotFoundError):
        chain.resolve("C")
    with pytest.raises(ValueError):
        ChainSecretStore([])


@pytest.mark.unit
def test_stores_satisfy_protocol(tmp_path: Path) -> None:
    stores: list[object] = [
        MappingSecretStore(),
        EnvSecretStore(environ={}),
        FileSecretStore(tmp_path),
        ChainSecretStore([MappingSecretStore()]),
    ]
    assert all(isinstance(store, SecretStore) for store in stores)
