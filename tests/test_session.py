"""Tests for session resolution."""

from pathlib import Path

import pytest

from iso_env import ConfigurationError, RuntimeSettings, resolve_session
from iso_env.session import EPHEMERAL_PREFIX, new_ephemeral_id


class TestResolveSession:
    def test_explicit_name_wins(self, tmp_path: Path) -> None:
        settings = RuntimeSettings(cwd=tmp_path, session_override="from-env")
        session = resolve_session("explicit", settings)
        assert session.id == "explicit"
        assert session.ephemeral is False

    def test_env_override(self, tmp_path: Path) -> None:
        settings = RuntimeSettings(cwd=tmp_path, session_override="default")
        session = resolve_session(None, settings)
        assert session.id == "default"
        assert session.ephemeral is False

    def test_ephemeral_when_unnamed(self, tmp_path: Path) -> None:
        session = resolve_session(None, RuntimeSettings(cwd=tmp_path))
        assert session.ephemeral is True
        assert session.id.startswith(EPHEMERAL_PREFIX)

    @pytest.mark.parametrize("name", ["has space", "-leading", "a/b", "x:y"])
    def test_invalid_names_rejected(self, tmp_path: Path, name: str) -> None:
        with pytest.raises(ConfigurationError, match="Invalid session name"):
            resolve_session(name, RuntimeSettings(cwd=tmp_path))


class TestEphemeralIds:
    def test_ids_are_unique(self) -> None:
        ids = {new_ephemeral_id() for _ in range(100)}
        assert len(ids) == 100

    def test_id_is_url_safe_encoding_of_8_bytes(self) -> None:
        suffix = new_ephemeral_id()[len(EPHEMERAL_PREFIX) :]
        assert len(suffix) == 11
        assert all(c.isalnum() or c in "-_" for c in suffix)
