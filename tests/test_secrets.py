from __future__ import annotations

import pytest

from matrixci.secrets import (
    MASK,
    ChainSecretProvider,
    DotenvSecretProvider,
    EnvSecretProvider,
    MappingSecretProvider,
    SecretRef,
)


class TestSecretRef:
    def test_never_renders_value(self):
        ref = SecretRef("CODECOV_TOKEN")
        assert str(ref) == MASK
        assert f"token={ref}" == "token=***"
        assert repr(ref) == "SecretRef('CODECOV_TOKEN')"


class TestMappingProvider:
    def test_is_set_and_reveal(self):
        provider = MappingSecretProvider({"A": "1"})
        assert provider.is_set("A")
        assert not provider.is_set("B")
        assert provider.reveal("A") == "1"
        assert provider.reveal("B") == ""

    def test_empty_value_is_unset_by_default(self):
        provider = MappingSecretProvider({"A": ""})
        assert not provider.is_set("A")

    def test_empty_value_can_count_as_set(self):
        provider = MappingSecretProvider({"A": ""}, empty_is_unset=False)
        assert provider.is_set("A")

    def test_values_copied_on_construction(self):
        values = {"A": "1"}
        provider = MappingSecretProvider(values)
        values["B"] = "2"
        assert provider.names() == ["A"]

    def test_repr_hides_values(self):
        assert "hunter2" not in repr(MappingSecretProvider({"A": "hunter2"}))


def test_env_provider_reads_only_allow_list():
    environ = {"TOKEN": "abc", "HOME": "/root", "EMPTY": ""}
    provider = EnvSecretProvider(["TOKEN", "EMPTY", "MISSING"], environ=environ)
    assert provider.names() == ["EMPTY", "TOKEN"]
    assert provider.is_set("TOKEN")
    assert not provider.is_set("EMPTY")
    assert not provider.is_set("HOME")


def test_env_provider_defaults_to_process_environment(monkeypatch):
    monkeypatch.setenv("MATRIXCI_TEST_SECRET", "xyz")
    provider = EnvSecretProvider(["MATRIXCI_TEST_SECRET"])
    assert provider.reveal("MATRIXCI_TEST_SECRET") == "xyz"


def test_dotenv_provider(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text('CODECOV_TOKEN="abc123"\nEMPTY=\n# comment\n', encoding="utf-8")
    provider = DotenvSecretProvider(env_file)
    assert provider.reveal("CODECOV_TOKEN") == "abc123"
    assert not provider.is_set("EMPTY")


def test_dotenv_provider_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        DotenvSecretProvider(tmp_path / "nope.env")


def test_chain_first_set_provider_wins():
    chain = ChainSecretProvider(
        MappingSecretProvider({"A": "", "B": "first"}),
        MappingSecretProvider({"A": "second", "B": "other"}),
    )
    assert chain.reveal("A") == "second"
    assert chain.reveal("B") == "first"
    assert chain.is_set("A")
    assert not chain.is_set("C")
    assert chain.reveal("C") == ""
