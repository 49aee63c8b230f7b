"""Unit tests for output rendering and templates."""

from __future__ import annotations

import json
from typing import Any

import pytest

from keeper_injector.errors import TemplateRenderError
from keeper_injector.models import ResolvedSecret, SecretFormat, SecretRef
from keeper_injector.renderer import (
    escape_env_value,
    render,
    render_folder_record,
    render_secret,
    to_env_key,
)
from keeper_injector.templates import render_template

FIELDS = {"login": "admin", "password": "s3cret", "host": "db.internal"}


class TestFormats:
    """Test each output format."""

    def test_json_keeps_field_order(self) -> None:
        """Test JSON is indented and ordered like the record."""
        output = render(FIELDS, SecretFormat.JSON)

        assert output == (
            b'{\n  "login": "admin",\n  "password": "s3cret",\n  "host": "db.internal"\n}'
        )

    def test_json_bytes_are_base64(self) -> None:
        """Test binary values are base64-encoded in JSON."""
        output = render({"key": b"\x00\x01"}, SecretFormat.JSON)

        assert json.loads(output) == {"key": "AAE="}

    def test_env(self) -> None:
        """Test env lines upper-case keys and quote unsafe values."""
        output = render({"db-user": "admin", "pass phrase": "a b", "list": [1, 2]}, "env")

        assert output == b"DB_USER=admin\nPASS_PHRASE='a b'\nLIST='[1, 2]'\n"

    def test_raw(self) -> None:
        """Test raw writes the single value."""
        assert render({"password": "s3cret"}, SecretFormat.RAW) == b"s3cret"
        assert render({"blob": b"\xff"}, SecretFormat.RAW) == b"\xff"

    def test_raw_requires_one_field(self) -> None:
        """Test raw rejects several fields."""
        with pytest.raises(TemplateRenderError, match="exactly one field"):
            render(FIELDS, SecretFormat.RAW)

    def test_properties_sorted(self) -> None:
        """Test properties lines are sorted by key."""
        output = render(FIELDS, SecretFormat.PROPERTIES)

        assert output == b"host=db.internal\nlogin=admin\npassword=s3cret\n"

    def test_yaml(self) -> None:
        """Test YAML keeps field order."""
        output = render({"user": "admin", "host": "db"}, SecretFormat.YAML)

        assert output == b"user: admin\nhost: db\n"

    def test_ini_sections(self) -> None:
        """Test dotted keys become INI sections."""
        output = render({"user": "admin", "db.port": "5432", "db.host": "h"}, SecretFormat.INI)

        assert output == b"[secret]\nuser=admin\n\n[db]\nhost=h\nport=5432\n"

    def test_unknown_format(self) -> None:
        """Test unknown formats raise TemplateRenderError."""
        with pytest.raises(TemplateRenderError, match="unknown format"):
            render(FIELDS, "toml")

    def test_template_overrides_format(self) -> None:
        """Test a template wins over the format."""
        output = render(FIELDS, SecretFormat.RAW, "{{ login }}@{{ host }}")

        assert output == b"admin@db.internal"


class TestRenderSecret:
    """Test render_secret and render_folder_record."""

    def test_attachment_verbatim(self) -> None:
        """Test attachments bypass formats."""
        ref = SecretRef(name="tls", output_path="/keeper/secrets/cert.pem", is_file=True,
                        file_name="cert.pem", format=SecretFormat.RAW)
        resolved = ResolvedSecret(file_content=b"PEM")

        assert render_secret(ref, resolved) == b"PEM"

    def test_error_names_entry(self) -> None:
        """Test render errors are prefixed with the entry name."""
        ref = SecretRef(name="db-creds", output_path="/x", format=SecretFormat.RAW)

        with pytest.raises(TemplateRenderError, match="^db-creds: ") as exc_info:
            render_secret(ref, ResolvedSecret(fields=FIELDS))

        assert exc_info.value.entry == "db-creds"

    def test_folder_record_is_json(self) -> None:
        """Test folder records render as JSON."""
        output = render_folder_record(ResolvedSecret(fields={"password": "x"}))

        assert json.loads(output) == {"password": "x"}


class TestTemplates:
    """Test Jinja2 templates."""

    def test_fields_mapping(self) -> None:
        """Test names that are not identifiers are reachable via fields."""
        assert render_template('{{ fields["api-key"] }}', {"api-key": "k"}) == "k"

    @pytest.mark.parametrize(
        ("source", "expected"),
        [
            ("{{ login | b64enc }}", "YWRtaW4="),
            ("{{ 'YWRtaW4=' | b64dec }}", "admin"),
            ("{{ login | base64enc }}", "YWRtaW4="),
            ("{{ login | quote }}", '"admin"'),
            ("{{ login | squote }}", "'admin'"),
            ("{{ login | upper }}", "ADMIN"),
            ("{{ port | default('5432') }}", "5432"),
            (
                "{{ 'abc' | sha256sum }}",
                "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
            ),
        ],
    )
    def test_filters(self, source: str, expected: str) -> None:
        """Test the template filters."""
        assert render_template(source, FIELDS) == expected

    @pytest.mark.parametrize(
        ("source", "fields"),
        [
            ("{{ missing }}", FIELDS),
            ("{{ login ", FIELDS),
            ("{{ 'not base64!' | b64dec }}", FIELDS),
            ("", FIELDS),
        ],
    )
    def test_errors(self, source: str, fields: dict[str, Any]) -> None:
        """Test undefined names, syntax errors and filter failures."""
        with pytest.raises(TemplateRenderError):
            render_template(source, fields)

    def test_trailing_newline_kept(self) -> None:
        """Test a trailing newline survives rendering."""
        assert render_template("{{ login }}\n", FIELDS) == "admin\n"


class TestEnvHelpers:
    """Test env key and value helpers."""

    @pytest.mark.parametrize(
        ("key", "expected"),
        [("api-key.v2", "API_KEY_V2"), ("password", "PASSWORD"), ("a b", "A_B")],
    )
    def test_to_env_key(self, key: str, expected: str) -> None:
        """Test env key normalisation."""
        assert to_env_key(key) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("plain", "plain"), ("a b", "'a b'"), ("it's", "'it'\\''s'"), ("k=v", "'k=v'")],
    )
    def test_escape_env_value(self, value: str, expected: str) -> None:
        """Test shell quoting of env values."""
        assert escape_env_value(value) == expected
