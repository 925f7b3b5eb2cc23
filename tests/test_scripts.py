from __future__ import annotations

import json
from pathlib import Path

import pytest

from backend.agenttube.scripts import export_openapi, owner_api_keys


def _token_from(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Token (save now, only shown once): "):
            return line.rsplit(" ", 1)[-1]
    raise AssertionError(f"no token line in output: {output!r}")


def test_owner_key_create_list_and_revoke(capsys: pytest.CaptureFixture[str]) -> None:
    owner_api_keys.main(["create", "--owner-id", "owner_9", "--label", "web-app"])
    created = capsys.readouterr().out
    token = _token_from(created)
    key_id = token.split(".", 1)[0]

    assert f"Created owner API key: {key_id}" in created
    assert "Owner: owner_9 (web-app)" in created
    assert f"Authorization header: Bearer {token}" in created

    owner_api_keys.main(["list"])
    listed = capsys.readouterr().out
    assert key_id in listed
    assert "owner_9\tweb-app" in listed

    owner_api_keys.main(["revoke", "--key-id", key_id])
    assert f"Revoked owner API key: {key_id}" in capsys.readouterr().out

    owner_api_keys.main(["list"])
    assert "No owner API keys found." in capsys.readouterr().out

    owner_api_keys.main(["list", "--all"])
    assert key_id in capsys.readouterr().out


def test_revoking_unknown_key_reports_it(capsys: pytest.CaptureFixture[str]) -> None:
    owner_api_keys.main(["revoke", "--key-id", "okey_missing"])

    assert "No active owner API key found for: okey_missing" in capsys.readouterr().out


def test_export_openapi_writes_schema(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = tmp_path / "schema" / "openapi.json"

    written = export_openapi.main(["--output", str(output)])

    assert written == output
    schema = json.loads(output.read_text(encoding="utf-8"))
    assert schema["info"]["title"] == "AgentTube API"
    assert "/chat" in schema["paths"]
    assert "/transcript" in schema["paths"]
    assert "Wrote OpenAPI schema" in capsys.readouterr().out
