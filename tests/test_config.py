"""Tests for ClientConfig validation and config file loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from appclient import config as config_module
from appclient.config import DEFAULT_BASE_URL, ClientConfig, load_config, make_config
from appclient.errors import InvalidConfiguration

KEY = bytes(range(64))


def test_defaults() -> None:
    config = make_config("app-1")

    assert config.base_url == DEFAULT_BASE_URL
    assert config.multiplexing is False
    assert config.linger == 30.0
    assert config.auth_header_name == "Authorization"
    assert config.custom_headers == {}
    assert config.encryption_key is None


def test_empty_header_key_is_rejected() -> None:
    with pytest.raises(InvalidConfiguration) as excinfo:
        make_config("app-1", custom_headers={"": "value"})

    assert "custom_headers" in str(excinfo.value)
    assert excinfo.value.errors


def test_whitespace_header_key_is_rejected() -> None:
    with pytest.raises(InvalidConfiguration):
        make_config("app-1", custom_headers={"  ": "value"})


def test_empty_header_value_is_accepted() -> None:
    config = make_config("app-1", custom_headers={"X-Trace": ""})

    assert config.request_headers() == {"X-Trace": ""}


@pytest.mark.parametrize(
    "fields",
    [
        {"linger": -1},
        {"request_timeout": 0},
        {"base_url": "ftp://example.com"},
        {"base_url": "not a url"},
        {"auth_header_name": " "},
        {"encryption_key": b"short"},
        {"unknown": True},
    ],
)
def test_invalid_fields_fail_fast(fields: dict[str, object]) -> None:
    with pytest.raises(InvalidConfiguration):
        make_config("app-1", **fields)


def test_empty_app_id_is_rejected() -> None:
    with pytest.raises(InvalidConfiguration, match="app_id"):
        make_config("   ")


def test_encryption_key_of_required_length_is_accepted_and_hidden() -> None:
    config = make_config("app-1", encryption_key=KEY)

    assert config.encryption_key == KEY
    assert "encryption_key" not in repr(config)


def test_config_is_frozen() -> None:
    config = make_config("app-1")

    with pytest.raises(ValidationError):
        config.linger = 5  # type: ignore[misc]


def test_base_url_trailing_slash_is_stripped() -> None:
    config = make_config("app-1", base_url="https://gateway.example.com/")

    assert config.base_url == "https://gateway.example.com"


def test_with_base_url_returns_validated_copy() -> None:
    config = make_config("app-1", multiplexing=True, custom_headers={"X-A": "1"})

    updated = config.with_base_url("https://eu.example.com")

    assert updated.base_url == "https://eu.example.com"
    assert updated.multiplexing is True
    assert updated.custom_headers == {"X-A": "1"}
    assert config.base_url == DEFAULT_BASE_URL
    with pytest.raises(InvalidConfiguration):
        config.with_base_url("nope")


def test_changed_fields_lists_every_difference() -> None:
    base = make_config("app-1")
    moved = base.with_base_url("https://eu.example.com")
    retuned = make_config("app-1", base_url="https://eu.example.com", linger=5)

    assert base.changed_fields(moved) == {"base_url"}
    assert base.changed_fields(retuned) == {"base_url", "linger"}
    assert base.changed_fields(make_config("app-1")) == set()


def test_custom_headers_cannot_be_changed_in_place() -> None:
    source = {"X-Tenant": "acme"}
    config = make_config("app-1", custom_headers=source)

    with pytest.raises(TypeError):
        config.custom_headers["X-Tenant"] = "other"  # type: ignore[index]
    with pytest.raises(TypeError):
        make_config("app-1").custom_headers["X-New"] = "1"  # type: ignore[index]
    source["X-Tenant"] = "other"

    assert config.custom_headers == {"X-Tenant": "acme"}
    assert config.request_headers() == {"X-Tenant": "acme"}


def test_request_headers_returns_a_fresh_dict() -> None:
    config = make_config("app-1", custom_headers={"X-Tenant": "acme"})

    headers = config.request_headers()
    headers["X-Tenant"] = "other"

    assert config.request_headers() == {"X-Tenant": "acme"}


def test_custom_headers_dump_as_plain_dict() -> None:
    config = make_config("app-1", custom_headers={"X-Tenant": "acme"})

    dumped = config.model_dump()

    assert type(dumped["custom_headers"]) is dict
    assert config.model_dump_json().count("X-Tenant") == 1


def test_load_config_returns_empty_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    assert load_config() == {}


def test_load_config_reads_apps(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        f"""
[[apps]]
app_id = "tasks-abcde"
base_url = "https://eu-west-1.example.com"
multiplexing = true
linger = 10

[apps.custom_headers]
X-Tenant = "acme"
X-Empty = ""

[[apps]]
app_id = "notes-fghij"
encryption_key = "{KEY.hex()}"
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert set(result) == {"tasks-abcde", "notes-fghij"}
    tasks = result["tasks-abcde"]
    assert tasks.base_url == "https://eu-west-1.example.com"
    assert tasks.multiplexing is True
    assert tasks.linger == 10
    assert tasks.custom_headers == {"X-Tenant": "acme", "X-Empty": ""}
    assert result["notes-fghij"].encryption_key == KEY


def test_load_config_handles_toml_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("apps = [unterminated")

    assert load_config(config_path) == {}


def test_load_config_rejects_invalid_entries(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[[apps]]\napp_id = "x"\nlinger = -5\n')

    with pytest.raises(InvalidConfiguration):
        load_config(config_path)


def test_load_config_rejects_entry_without_app_id(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[[apps]]\nbase_url = "https://example.com"\n')

    with pytest.raises(InvalidConfiguration, match="missing app_id"):
        load_config(config_path)


def test_load_config_rejects_non_hex_key(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[[apps]]\napp_id = "x"\nencryption_key = "zz"\n')

    with pytest.raises(InvalidConfiguration, match="hex"):
        load_config(config_path)


def test_client_config_direct_construction_raises_invalid_configuration() -> None:
    with pytest.raises(InvalidConfiguration, match="app_id"):
        ClientConfig(app_id="")
    with pytest.raises(InvalidConfiguration, match="custom_headers") as excinfo:
        ClientConfig(app_id="tasks", custom_headers={"": "x"})

    assert isinstance(excinfo.value, ValueError)
    assert isinstance(excinfo.value.__cause__, ValidationError)
