"""Shared fixtures: an in-memory container engine and resolved configs."""

import asyncio
import itertools
import json
import os
from pathlib import Path
from typing import Any, Callable

import docker.errors
import pytest
import tomli_w

from devnet_deployer.chain import CancellationToken
from devnet_deployer.config import DeploymentConfig
from devnet_deployer.context import ExecutionContext
from devnet_deployer.docker_ops import StartedContainer
from devnet_deployer.errors import RuntimeClientError
from devnet_deployer.image_builder import ImageResolver
from devnet_deployer.topology import Topology

DISPUTE_GAME_FACTORY = "0x" + "ab" * 20


class FakeContainer:
    def __init__(self, name: str, image: str, ports: dict[int, int], created: int, running: bool = True):
        self.name = name
        self.image = image
        self.id = f"{abs(hash(name)):064x}"[:64]
        self.host_ports = ports
        self.running = running
        self.created = created

    @property
    def attrs(self) -> dict[str, Any]:
        return {
            "Created": f"2026-01-01T00:00:{self.created:02d}Z",
            "State": {"Running": self.running, "Status": "running" if self.running else "exited"},
            "NetworkSettings": {
                "Ports": {f"{p}/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(h)}] for p, h in self.host_ports.items()}
            },
        }


def data_mount(volumes: dict | None, container_path: str = "/data") -> Path | None:
    for host, spec in (volumes or {}).items():
        if spec["bind"] == container_path:
            return Path(host)
    return None


def fake_accounts(count: int = 20) -> dict[str, list[str]]:
    return {
        "available_accounts": [f"0x{i:040X}" for i in range(1, count + 1)],
        "private_keys": [f"0x{i:064x}" for i in range(1, count + 1)],
    }


def write_anvil_config(name: str, volumes: dict) -> None:
    (data_mount(volumes) / "anvil.json").write_text(json.dumps(fake_accounts()))


def run_op_deployer_step(step: str, volumes: dict) -> None:
    """Write what each op-deployer invocation would produce."""
    workdir = data_mount(volumes)
    if step == "init":
        with (workdir / "intent.toml").open("wb") as f:
            tomli_w.dump({"configType": "standard-overrides", "chains": [{"id": "0x01"}]}, f)
    elif step == "apply":
        state = {"opChainDeployments": [{"DisputeGameFactoryProxy": DISPUTE_GAME_FACTORY, "id": "0x01"}]}
        (workdir / "state.json").write_text(json.dumps(state))
    elif step.startswith("inspect-"):
        kind = step.removeprefix("inspect-")
        (workdir / f"{kind}.json").write_text(json.dumps({"kind": kind}))


class FakeDocker:
    """
    In-memory stand-in for DockerClientWrapper.

    Implements the async surface services, cleanup and health use. Starts can
    be made to fail by name substring via `fail_on`.
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.networks: set[str] = set()
        self.images: set[str] = set()
        self.created_containers: list[str] = []
        self.created_networks: list[str] = []
        self.jobs: list[str] = []
        self.builds: list[str] = []
        self.pulls: list[str] = []
        self.fail_on: dict[str, Any] = {}
        self.start_hooks: list[tuple[str, Callable[[str, dict], None]]] = [("-anvil", write_anvil_config)]
        self.stop_hooks: list[Callable[[str], None]] = []
        self._ports = itertools.count(30000)
        self._clock = itertools.count()
        self.closed = False

    # engine state helpers for tests

    def add_container(self, name: str, ports: list[int] | None = None, running: bool = True) -> FakeContainer:
        container = FakeContainer(
            name, "test:latest", {p: next(self._ports) for p in ports or []}, next(self._clock), running
        )
        self.containers[name] = container
        return container

    def names(self) -> list[str]:
        return sorted(self.containers)

    def close(self) -> None:
        self.closed = True

    # networks

    async def create_network(self, name: str) -> str:
        self.networks.add(name)
        if name not in self.created_networks:
            self.created_networks.append(name)
        return f"net-{name}"

    async def remove_network(self, name: str) -> bool:
        if name not in self.networks:
            return False
        self.networks.remove(name)
        if name in self.created_networks:
            self.created_networks.remove(name)
        return True

    # containers

    async def start_service(
        self,
        name: str,
        image: str,
        network: str,
        command: list[str] | None = None,
        ports: list[int] | None = None,
        volumes: dict | None = None,
        environment: dict | None = None,
        entrypoint: list[str] | None = None,
        start_timeout: float = 120.0,
    ) -> StartedContainer:
        await asyncio.sleep(0)
        if network not in self.networks:
            raise RuntimeClientError(f"network {network} not found")
        if name not in self.created_containers:
            self.created_containers.append(name)
        for fragment, error in self.fail_on.items():
            if fragment in name:
                self.add_container(name, ports, running=False)
                raise error
        container = self.add_container(name, ports)
        container.image = image
        container.command = command
        container.volumes = volumes
        container.environment = environment
        for suffix, hook in self.start_hooks:
            if name.endswith(suffix):
                hook(name, volumes or {})
        return StartedContainer(container_id=container.id, name=name, host_ports=dict(container.host_ports))

    async def run_to_completion(
        self,
        name: str,
        image: str,
        network: str,
        command: list[str],
        volumes: dict | None = None,
        entrypoint: list[str] | None = None,
        timeout: float = 600.0,
    ) -> tuple[int, str]:
        await asyncio.sleep(0)
        for fragment, error in self.fail_on.items():
            if fragment in name:
                if isinstance(error, int):
                    return error, "boom"
                raise error
        step = name.split("op-deployer-", 1)[-1]
        self.jobs.append(step)
        run_op_deployer_step(step, volumes or {})
        return 0, ""

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        if container_id not in self.containers:
            raise docker.errors.NotFound(f"No such container: {container_id}")
        self.containers[container_id].running = False
        for hook in self.stop_hooks:
            hook(container_id)
        await asyncio.sleep(0)

    async def remove_container(self, container_id: str, force: bool = False, v: bool = False) -> None:
        self.containers.pop(container_id, None)

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        if container_id not in self.containers:
            raise docker.errors.NotFound(f"No such container: {container_id}")
        return self.containers[container_id].attrs

    async def list_by_prefix(self, prefix: str) -> list[FakeContainer]:
        return [c for c in self.containers.values() if c.name.startswith(prefix)]

    # images

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def ensure_image(self, image: str, tag: str) -> str:
        reference = f"{image}:{tag}"
        if reference not in self.images:
            self.pulls.append(reference)
            self.images.add(reference)
        return reference

    async def build_binary_image(self, dockerfile_content: str, binary: Path, tag: str) -> str:
        self.builds.append(tag)
        self.images.add(tag)
        return tag


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No DEVNET_* variables or .env file from the developer's shell."""
    for key in list(os.environ):
        if key.startswith("DEVNET_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def make_config(tmp_path):
    """Factory for fully-resolved configs rooted in tmp_path."""

    def _make(**overrides: Any) -> DeploymentConfig:
        values: dict[str, Any] = {
            "network_name": "devnet-test",
            "outdata": tmp_path / "data-devnet-test",
            "l1_chain_id": 31337,
            "l2_chain_id": 42069,
            "genesis_timestamp": 1_700_000_000,
            "l2_node_count": 3,
            "sequencer_count": 1,
            "monitoring": False,
            "stream_logs": False,
        }
        values.update(overrides)
        return DeploymentConfig(**values)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def make_context(fake_docker):
    """Factory for an ExecutionContext over the fake engine, with the run network created."""

    def _make(config: DeploymentConfig, force: bool = False) -> ExecutionContext:
        topology = Topology.from_config(config)
        fake_docker.networks.add(topology.docker_network)
        fake_docker.created_networks.append(topology.docker_network)
        return ExecutionContext(
            docker=fake_docker,
            images=ImageResolver(fake_docker, config.network_name),
            config=config,
            topology=topology,
            outdata=config.outdata,
            cancel=CancellationToken(),
            force_bootstrap=force,
        )

    return _make
