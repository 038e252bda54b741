"""Live tests of the docker binding. Skipped without a reachable daemon."""

import shutil
import uuid

import pytest

from iso_env.engine.docker_client import DockerResourceClient, create_docker_client
from iso_env.engine.ops import discard_network, ensure_network, ensure_volume
from iso_env.errors import EngineError, ResourceNotFoundError

pytestmark = pytest.mark.requires_docker


@pytest.fixture
def client():
    if shutil.which("docker") is None:
        pytest.skip("Docker not available")
    try:
        docker_client = create_docker_client()
    except EngineError as e:
        pytest.skip(f"Docker daemon not reachable: {e}")
    resource_client = DockerResourceClient(docker_client)
    yield resource_client
    resource_client.close()


@pytest.fixture
def name() -> str:
    return f"iso-env-test-{uuid.uuid4().hex[:8]}"


class TestNetworkLifecycle:
    def test_ensure_is_idempotent(self, client: DockerResourceClient, name: str) -> None:
        try:
            assert ensure_network(client, name) is True
            assert ensure_network(client, name) is False
        finally:
            discard_network(client, name)
        assert not client.network_exists(name)

    def test_remove_missing(self, client: DockerResourceClient, name: str) -> None:
        with pytest.raises(ResourceNotFoundError):
            client.remove_network(name)


class TestVolumeLifecycle:
    def test_create_list_remove(self, client: DockerResourceClient, name: str) -> None:
        try:
            assert ensure_volume(client, name, labels={"iso.managed": "true"}) is True
            assert ensure_volume(client, name) is False
            assert name in client.list_volumes(dangling=True)
        finally:
            client.remove_volume(name)
        assert not client.volume_exists(name)

    def test_remove_missing(self, client: DockerResourceClient, name: str) -> None:
        with pytest.raises(ResourceNotFoundError):
            client.remove_volume(name)
