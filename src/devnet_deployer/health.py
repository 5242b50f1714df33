"""
Health reconciler for a deployed network.

Works from a persisted configuration alone: container names are re-derived
from the topology, state comes from the container engine and progress from
the services' RPC endpoints. No live DeploymentResult is needed, so this runs
against networks started by an earlier, detached process.

A network is healthy iff:
- every expected container is running
- anvil and every op-reth report the recorded chain id
- every kona-node reports non-null unsafe, safe and finalized L2 heads

Failures are collected into the report, never raised.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import docker.errors
import httpx
import structlog

from .config import DeploymentConfig
from .docker_ops import DockerClientWrapper, parse_host_ports
from .errors import HealthCheckError
from .rpc import JsonRpcClient, RPCError
from .services.anvil import RPC_PORT as ANVIL_RPC_PORT
from .services.l2_node import KONA_RPC_PORT, RETH_HTTP_PORT
from .topology import Topology

logger = structlog.get_logger()

SYNC_HEADS = ("unsafe_l2", "safe_l2", "finalized_l2")


@dataclass
class ServiceHealth:
    name: str
    container_name: str
    running: bool = False
    expected_chain_id: int | None = None
    chain_id: int | None = None
    # head name -> block number, for consensus nodes
    sync: dict[str, int | None] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.running and not self.errors

    def fail(self, message: str) -> None:
        self.errors.append(str(HealthCheckError(message, unit=self.container_name)))


@dataclass
class HealthReport:
    network_name: str
    services: list[ServiceHealth] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(self.services) and not self.errors and all(s.healthy for s in self.services)

    def failures(self) -> list[str]:
        return [*self.errors, *(e for s in self.services for e in s.errors)]


def _host_url(attrs: dict[str, Any], port: int) -> str | None:
    host_port = parse_host_ports(attrs).get(port)
    if host_port is None:
        return None
    return f"http://localhost:{host_port}"


def _head_number(status: dict[str, Any], head: str) -> int | None:
    block = status.get(head)
    if not isinstance(block, dict):
        return None
    return block.get("number")


class HealthChecker:
    """Checks one network. Use `check_health` unless you need the pieces."""

    def __init__(self, config: DeploymentConfig, docker_client: DockerClientWrapper, rpc: JsonRpcClient):
        config.require_resolved()
        self.config = config
        self.topology = Topology.from_config(config)
        self.docker = docker_client
        self.rpc = rpc

    def expected(self) -> list[tuple[str, str]]:
        """(service, container name) for every container the deployment should have."""
        topology = self.topology
        result = [("anvil", topology.anvil)]
        for node in topology.nodes:
            result.append(("op-reth", node.execution))
            result.append(("kona-node", node.consensus))
        result += [
            ("op-batcher", topology.batcher),
            ("op-proposer", topology.proposer),
            ("op-challenger", topology.challenger),
        ]
        result += [("op-conductor", name) for name in topology.conductors]
        if topology.monitoring:
            result += [("prometheus", topology.prometheus), ("grafana", topology.grafana)]
        return result

    async def _inspect(self, health: ServiceHealth) -> dict[str, Any] | None:
        try:
            attrs = await self.docker.inspect_container(health.container_name)
        except docker.errors.NotFound:
            health.fail("container not found")
            return None
        state = attrs.get("State") or {}
        health.running = bool(state.get("Running"))
        if not health.running:
            health.fail(f"container not running (status={state.get('Status')})")
            return None
        return attrs

    async def _check_chain_id(self, health: ServiceHealth, url: str) -> None:
        health.chain_id = await self.rpc.chain_id(url)
        if health.chain_id != health.expected_chain_id:
            health.fail(f"chain id {health.chain_id} does not match recorded {health.expected_chain_id}")

    async def _check_sync(self, health: ServiceHealth, url: str) -> None:
        status = await self.rpc.sync_status(url)
        health.sync = {head: _head_number(status, head) for head in SYNC_HEADS}
        missing = [head for head, number in health.sync.items() if number is None]
        if missing:
            health.fail(f"sync status has no {', '.join(missing)} head")

    async def check_one(self, service: str, container_name: str) -> ServiceHealth:
        health = ServiceHealth(name=service, container_name=container_name)
        attrs = await self._inspect(health)
        if attrs is None:
            return health

        rpc_check = None
        if service == "anvil":
            health.expected_chain_id = self.config.l1_chain_id
            rpc_check = (ANVIL_RPC_PORT, self._check_chain_id)
        elif service == "op-reth":
            health.expected_chain_id = self.config.l2_chain_id
            rpc_check = (RETH_HTTP_PORT, self._check_chain_id)
        elif service == "kona-node":
            rpc_check = (KONA_RPC_PORT, self._check_sync)
        if rpc_check is None:
            return health

        port, check = rpc_check
        url = _host_url(attrs, port)
        if url is None:
            health.fail(f"port {port} is not published")
            return health
        try:
            await check(health, url)
        except (httpx.HTTPError, RPCError, ValueError, TypeError) as e:
            health.fail(f"RPC query to {url} failed: {e or type(e).__name__}")
        return health

    async def run(self) -> HealthReport:
        report = HealthReport(network_name=self.topology.network_name)
        results = await asyncio.gather(*(self.check_one(s, name) for s, name in self.expected()))
        report.services.extend(results)
        return report


async def check_health(
    config: DeploymentConfig,
    docker_client: DockerClientWrapper | None = None,
    client: httpx.AsyncClient | None = None,
) -> HealthReport:
    """
    Check a deployment described by a resolved configuration.

    Args:
        config: Persisted configuration of the deployment
        docker_client: Runtime client; created from the environment when omitted
        client: HTTP client for RPC probes; created when omitted

    Returns:
        HealthReport; `report.healthy` is the verdict
    """
    report = HealthReport(network_name=config.network_name or "")
    owns_docker = docker_client is None
    try:
        docker_client = docker_client or DockerClientWrapper(stream_logs=False)
    except docker.errors.DockerException as e:
        report.errors.append(str(HealthCheckError(f"Container engine unavailable: {e}")))
        logger.warning("health_engine_unavailable", error=str(e))
        return report

    try:
        async with JsonRpcClient(client, timeout=config.health_timeout) as rpc:
            report = await HealthChecker(config, docker_client, rpc).run()
    except docker.errors.DockerException as e:
        report.errors.append(str(HealthCheckError(f"Container engine error: {e}")))
    finally:
        if owns_docker:
            docker_client.close()

    for service in report.services:
        if service.healthy:
            logger.debug("service_healthy", container_name=service.container_name)
        else:
            logger.warning("service_unhealthy", container_name=service.container_name, errors=service.errors)
    logger.info("health_checked", network_name=report.network_name, healthy=report.healthy)
    return report
