import json

import httpx
import pytest

from devnet_deployer.health import HealthChecker, check_health
from devnet_deployer.rpc import JsonRpcClient
from devnet_deployer.services.anvil import RPC_PORT as ANVIL_RPC_PORT
from devnet_deployer.services.l2_node import KONA_RPC_PORT, RETH_HTTP_PORT

PORTS = {"anvil": [ANVIL_RPC_PORT], "op-reth": [RETH_HTTP_PORT], "kona-node": [KONA_RPC_PORT]}


def synced(number: int = 5) -> dict:
    return {head: {"number": number, "hash": "0x" + "00" * 32} for head in ("unsafe_l2", "safe_l2", "finalized_l2")}


class FakeNetwork:
    """Populates the fake engine with a deployment and answers its RPC calls."""

    def __init__(self, config, fake_docker):
        self.config = config
        self.docker = fake_docker
        # host port -> service kind
        self.endpoints: dict[int, str] = {}
        self.chain_ids = {"anvil": config.l1_chain_id, "op-reth": config.l2_chain_id}
        self.sync = synced()
        # service kind -> raw response body, bypassing JSON-RPC framing
        self.bodies: dict[str, object] = {}
        checker = HealthChecker(config, fake_docker, JsonRpcClient())
        for service, name in checker.expected():
            container = fake_docker.add_container(name, PORTS.get(service))
            for host_port in container.host_ports.values():
                self.endpoints[host_port] = service

    def handler(self, request: httpx.Request) -> httpx.Response:
        service = self.endpoints.get(request.url.port)
        if service is None:
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content)
        if service in self.bodies:
            return httpx.Response(200, json=self.bodies[service])
        if body["method"] == "eth_chainId":
            result = hex(self.chain_ids[service])
        elif body["method"] == "optimism_syncStatus":
            result = self.sync
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"message": "nope"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def network(config, fake_docker):
    return FakeNetwork(config, fake_docker)


class TestExpectedContainers:
    def test_single_sequencer(self, config, fake_docker):
        names = [name for _, name in HealthChecker(config, fake_docker, JsonRpcClient()).expected()]
        assert names[0] == "devnet-test-anvil"
        assert "devnet-test-op-challenger" in names
        assert not any("conductor" in n for n in names)
        assert len(names) == 1 + 2 * 3 + 3

    def test_coordinated_with_monitoring(self, make_config, fake_docker):
        config = make_config(l2_node_count=5, sequencer_count=3, monitoring=True)
        names = [name for _, name in HealthChecker(config, fake_docker, JsonRpcClient()).expected()]
        assert [n for n in names if "conductor" in n] == [f"devnet-test-op-conductor-{i}" for i in range(3)]
        assert "devnet-test-prometheus" in names
        assert "devnet-test-grafana" in names


class TestCheckHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, config, fake_docker, network):
        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert report.healthy, report.failures()
        kona = [s for s in report.services if s.name == "kona-node"]
        assert all(s.sync == {"unsafe_l2": 5, "safe_l2": 5, "finalized_l2": 5} for s in kona)
        anvil = next(s for s in report.services if s.name == "anvil")
        assert anvil.chain_id == config.l1_chain_id

    @pytest.mark.asyncio
    async def test_stopped_container(self, config, fake_docker, network):
        fake_docker.containers["devnet-test-op-batcher"].running = False

        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        failures = report.failures()
        assert len(failures) == 1
        assert "devnet-test-op-batcher" in failures[0]
        assert "not running" in failures[0]

    @pytest.mark.asyncio
    async def test_missing_container(self, config, fake_docker, network):
        del fake_docker.containers["devnet-test-op-challenger"]

        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        assert "not found" in report.failures()[0]

    @pytest.mark.asyncio
    async def test_chain_id_mismatch(self, config, fake_docker, network):
        network.chain_ids["op-reth"] = 1

        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        assert all("does not match" in f for f in report.failures())
        assert len(report.failures()) == config.l2_node_count

    @pytest.mark.asyncio
    async def test_null_sync_head(self, config, fake_docker, network):
        network.sync["finalized_l2"] = None

        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        assert all("finalized_l2" in f for f in report.failures())

    @pytest.mark.asyncio
    async def test_unreachable_rpc_is_reported(self, config, fake_docker, network):
        network.endpoints.clear()

        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        assert all("RPC query" in f for f in report.failures())

    @pytest.mark.asyncio
    async def test_nothing_deployed(self, config, fake_docker):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        assert len(report.failures()) == len(report.services)

    @pytest.mark.asyncio
    async def test_malformed_responses_are_reported(self, config, fake_docker, network):
        network.bodies["anvil"] = ["not", "an", "object"]
        network.sync = "syncing"

        async with network.client() as client:
            report = await check_health(config, fake_docker, client)

        assert not report.healthy
        failures = report.failures()
        assert len(failures) == 1 + config.l2_node_count
        assert any("not a JSON-RPC object" in f for f in failures)
        assert sum("not an object" in f for f in failures) == config.l2_node_count
