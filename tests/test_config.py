"""Tests for descriptor and runtime settings parsing."""

from pathlib import Path

import pytest

from iso_env import (
    ConfigurationError,
    PeersSpec,
    PortMapping,
    ProjectDescriptor,
    RuntimeSettings,
    ServiceSpec,
)
from iso_env.config import DEFAULT_DOCKERFILE, DEFAULT_HELPER, DEFAULT_WORKDIR


class TestProjectDescriptor:
    def test_defaults(self) -> None:
        descriptor = ProjectDescriptor.from_dict(None)
        assert descriptor.dockerfile == DEFAULT_DOCKERFILE
        assert descriptor.workdir == DEFAULT_WORKDIR == "/workspace"
        assert descriptor.helper_path == DEFAULT_HELPER
        assert descriptor.privileged is False
        assert descriptor.services == {}
        assert descriptor.peers is None

    def test_full_descriptor(self) -> None:
        descriptor = ProjectDescriptor.from_dict(
            {
                "dockerfile": "docker/Dockerfile.dev",
                "workdir": "/src",
                "privileged": True,
                "volumes": ["/data"],
                "cache": ["/root/.cache/pip"],
                "binds": ["~/.ssh:/root/.ssh:ro"],
                "extra_hosts": ["host.docker.internal:host-gateway"],
                "environment": {"DEBUG": 1},
                "helper": "tools/iso",
            },
            services={"db": {"image": "postgres:16", "port": "5432"}},
        )
        assert descriptor.dockerfile == "docker/Dockerfile.dev"
        assert descriptor.workdir == "/src"
        assert descriptor.privileged is True
        assert descriptor.volumes == ["/data"]
        assert descriptor.cache == ["/root/.cache/pip"]
        assert descriptor.environment == {"DEBUG": "1"}
        assert descriptor.helper_path == "tools/iso"
        assert descriptor.services["db"].port == 5432

    def test_relative_workdir_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="workdir"):
            ProjectDescriptor(workdir="workspace")

    def test_relative_volume_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="absolute"):
            ProjectDescriptor.from_dict({"cache": ["cache/pip"]})

    def test_bind_without_target_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="bind"):
            ProjectDescriptor.from_dict({"binds": ["/only/host"]})

    def test_list_fields_must_be_lists(self) -> None:
        with pytest.raises(ConfigurationError, match="volumes must be a list"):
            ProjectDescriptor.from_dict({"volumes": "/data"})

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ProjectDescriptor.from_dict(["not", "a", "mapping"])  # type: ignore[arg-type]


class TestServiceSpec:
    def test_string_command_is_split(self) -> None:
        spec = ServiceSpec.from_dict("redis", {"image": "redis:7", "command": "redis-server --save ''"})
        assert spec.command == ["redis-server", "--save", "''"]

    def test_image_required(self) -> None:
        with pytest.raises(ConfigurationError, match="requires an image"):
            ServiceSpec.from_dict("db", {"port": 5432})

    def test_invalid_port(self) -> None:
        with pytest.raises(ConfigurationError, match="invalid port"):
            ServiceSpec.from_dict("db", {"image": "postgres", "port": "five"})

    def test_port_optional(self) -> None:
        assert ServiceSpec.from_dict("mail", {"image": "mailhog"}).port is None


class TestPortMapping:
    def test_host_and_container(self) -> None:
        assert PortMapping.parse("8080:80") == PortMapping(host=8080, container=80)

    def test_bare_port(self) -> None:
        assert PortMapping.parse(9000) == PortMapping(host=9000, container=9000)

    @pytest.mark.parametrize("value", ["http:80", "0:80", "80:70000"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ConfigurationError):
            PortMapping.parse(value)


class TestPeersSpec:
    def test_parses_peers(self) -> None:
        peers = PeersSpec.from_dict(
            {
                "network": "cluster",
                "peers": {
                    "node1": {"hostname": "n1", "ports": ["8080:80"], "environment": {"ROLE": "leader"}},
                    "node2": {"hostname": "n2"},
                },
            }
        )
        assert peers.network == "cluster"
        assert peers.peers["node1"].ports == [PortMapping(8080, 80)]
        assert peers.peers["node1"].environment == {"ROLE": "leader"}
        assert peers.peers["node2"].hostname == "n2"

    def test_hostname_required(self) -> None:
        with pytest.raises(ConfigurationError, match="hostname"):
            PeersSpec.from_dict({"peers": {"node1": {}}})

    def test_at_least_one_peer(self) -> None:
        with pytest.raises(ConfigurationError, match="at least one peer"):
            PeersSpec.from_dict({"peers": {}})

    def test_descriptor_carries_peers(self) -> None:
        descriptor = ProjectDescriptor.from_dict({}, peers={"peers": {"a": {"hostname": "a"}}})
        assert descriptor.peers is not None
        assert descriptor.peers.network is None


class TestRuntimeSettings:
    def test_from_env(self, tmp_path: Path) -> None:
        settings = RuntimeSettings.from_env(
            {
                "ISO_SESSION": "feature",
                "ISO_CACHE_DIR": str(tmp_path / "cache"),
                "TERM": "xterm-256color",
                "DEBUG": "1",
                "HOME": str(tmp_path),
            },
            cwd=tmp_path,
        )
        assert settings.cwd == tmp_path
        assert settings.session_override == "feature"
        assert settings.cache_dir == tmp_path / "cache"
        assert settings.term == "xterm-256color"
        assert settings.debug is True
        assert settings.home == tmp_path

    def test_empty_env(self, tmp_path: Path) -> None:
        settings = RuntimeSettings.from_env({}, cwd=tmp_path)
        assert settings.session_override is None
        assert settings.cache_dir is None
        assert settings.term is None
        assert settings.debug is False

    def test_debug_zero_is_off(self, tmp_path: Path) -> None:
        assert RuntimeSettings.from_env({"DEBUG": "0"}, cwd=tmp_path).debug is False

    def test_cache_dir_expands_user(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        settings = RuntimeSettings.from_env({"ISO_CACHE_DIR": "~/iso-cache"}, cwd=tmp_path)
        assert settings.cache_dir == tmp_path / "iso-cache"
