from unittest.mock import MagicMock, patch

import docker.errors
import pytest

from devnet_deployer.cleanup import cleanup_by_prefix, cleanup_run


class TestCleanupByPrefix:
    @pytest.mark.asyncio
    async def test_removes_matching_containers_and_network(self, fake_docker):
        for name in ("devnet-test-anvil", "devnet-test-op-reth", "devnet-other-anvil"):
            fake_docker.add_container(name)
        fake_docker.networks.update({"devnet-test-network", "devnet-other-network"})

        result = await cleanup_by_prefix("devnet-test", fake_docker)

        assert sorted(result.containers_removed) == ["devnet-test-anvil", "devnet-test-op-reth"]
        assert result.network_removed == "devnet-test-network"
        assert fake_docker.names() == ["devnet-other-anvil"]
        assert fake_docker.networks == {"devnet-other-network"}

    @pytest.mark.asyncio
    async def test_newest_first(self, fake_docker):
        for name in ("devnet-test-anvil", "devnet-test-op-reth", "devnet-test-op-batcher"):
            fake_docker.add_container(name)

        result = await cleanup_by_prefix("devnet-test", fake_docker)

        assert result.containers_removed == ["devnet-test-op-batcher", "devnet-test-op-reth", "devnet-test-anvil"]

    @pytest.mark.asyncio
    async def test_idempotent(self, fake_docker):
        fake_docker.add_container("devnet-test-anvil")
        fake_docker.networks.add("devnet-test-network")

        first = await cleanup_by_prefix("devnet-test", fake_docker)
        second = await cleanup_by_prefix("devnet-test", fake_docker)

        assert not first.nothing_to_do
        assert second.nothing_to_do
        assert second.errors == []

    @pytest.mark.asyncio
    async def test_stopped_containers_removed(self, fake_docker):
        fake_docker.add_container("devnet-test-anvil", running=False)

        result = await cleanup_by_prefix("devnet-test", fake_docker)

        assert result.containers_removed == ["devnet-test-anvil"]

    @pytest.mark.asyncio
    async def test_empty_prefix_refused(self, fake_docker):
        fake_docker.add_container("devnet-test-anvil")

        result = await cleanup_by_prefix("", fake_docker)

        assert result.errors
        assert fake_docker.names() == ["devnet-test-anvil"]

    @pytest.mark.asyncio
    async def test_engine_unavailable_never_raises(self):
        with patch("docker.from_env", side_effect=docker.errors.DockerException("no socket")):
            result = await cleanup_by_prefix("devnet-test")

        assert result.nothing_to_do
        assert "unavailable" in result.errors[0]

    @pytest.mark.asyncio
    async def test_engine_conflict_is_collected_not_raised(self, fake_docker):
        fake_docker.add_container("devnet-test-anvil")
        fake_docker.remove_container = MagicMock(side_effect=docker.errors.APIError("removal in progress"))

        result = await cleanup_by_prefix("devnet-test", fake_docker)

        assert result.containers_removed == []
        assert "devnet-test-anvil" in result.errors[0]

    @pytest.mark.asyncio
    async def test_output_directory_untouched(self, fake_docker, tmp_path):
        artifact = tmp_path / "data-devnet-test" / "l2-stack" / "genesis.json"
        artifact.parent.mkdir(parents=True)
        artifact.write_text("{}")
        fake_docker.add_container("devnet-test-anvil")

        await cleanup_by_prefix("devnet-test", fake_docker)

        assert artifact.read_text() == "{}"


class TestCleanupRun:
    @pytest.mark.asyncio
    async def test_reverse_creation_order(self, fake_docker):
        fake_docker.networks.add("devnet-test-network")
        for name in ("devnet-test-anvil", "devnet-test-op-reth", "devnet-test-kona-node"):
            fake_docker.add_container(name)
            fake_docker.created_containers.append(name)

        result = await cleanup_run(fake_docker, "devnet-test-network")

        assert result.containers_removed == ["devnet-test-kona-node", "devnet-test-op-reth", "devnet-test-anvil"]
        assert result.network_removed == "devnet-test-network"
        assert fake_docker.created_containers == []

    @pytest.mark.asyncio
    async def test_already_removed_is_skipped(self, fake_docker):
        fake_docker.created_containers.append("devnet-test-anvil")

        result = await cleanup_run(fake_docker, "devnet-test-network")

        assert result.errors == []
        assert result.nothing_to_do
