import asyncio
import io
import tarfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import docker
import docker.errors
import structlog

from .errors import RuntimeClientError

logger = structlog.get_logger()

LABEL_NETWORK = "devnet.network"
RUNNING_POLL_INTERVAL = 0.5
LOG_TAIL_LINES = 40


@dataclass
class StartedContainer:
    container_id: str
    name: str
    # container port -> published host port
    host_ports: Dict[int, int] = field(default_factory=dict)


def parse_host_ports(attrs: Dict[str, Any]) -> Dict[int, int]:
    """Extract `{container_port: host_port}` from `docker inspect` attrs (TCP only)."""
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    result: Dict[int, int] = {}
    for key, bindings in ports.items():
        port, _, proto = key.partition("/")
        if proto != "tcp" or not bindings:
            continue
        host_port = bindings[0].get("HostPort")
        if host_port:
            result[int(port)] = int(host_port)
    return result


class DockerClientWrapper:
    """
    Async wrapper around blocking docker-py client.

    Every call runs in a thread pool so concurrent unit deployments never block
    the event loop. Containers and networks started through this wrapper are
    remembered in creation order, which is what run cleanup walks in reverse.
    """

    def __init__(self, client: Any | None = None, max_workers: int = 8, stream_logs: bool = True):
        self._client = client or docker.from_env()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docker")
        # log followers block for the container's lifetime, keep them off the main pool
        self._log_executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="container-logs")
        self._stream_logs = stream_logs
        self.created_containers: List[str] = []
        self.created_networks: List[str] = []

    async def _run(self, func, *args, **kwargs):
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._log_executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()

    # --- networks -------------------------------------------------------

    async def create_network(self, name: str) -> str:
        """Create a bridge network, reusing an existing one with the same name."""
        existing = await self._run(self._client.networks.list, names=[name])
        for network in existing:
            if network.name == name:
                logger.info("network_reused", network_name=name)
                if name not in self.created_networks:
                    self.created_networks.append(name)
                return network.id

        network = await self._run(
            self._client.networks.create,
            name,
            driver="bridge",
            labels={LABEL_NETWORK: name},
        )
        self.created_networks.append(name)
        logger.info("network_created", network_name=name, network_id=network.id[:12])
        return network.id

    async def remove_network(self, name: str) -> bool:
        """Remove a network. Returns False if it did not exist."""
        try:
            network = await self._run(self._client.networks.get, name)
            await self._run(network.remove)
        except docker.errors.NotFound:
            return False
        if name in self.created_networks:
            self.created_networks.remove(name)
        return True

    # --- containers -----------------------------------------------------

    async def run_container(self, image: str, name: str, **kwargs) -> Any:
        """Create and start a detached container, recording it for cleanup."""
        # record first: a create that succeeds followed by a failed start still leaves a container
        if name not in self.created_containers:
            self.created_containers.append(name)
        return await self._run(self._client.containers.run, image, name=name, detach=True, **kwargs)

    async def get_container(self, container_id: str) -> Any:
        """Get a container by ID or name."""
        return await self._run(self._client.containers.get, container_id)

    async def container_exists(self, name: str) -> bool:
        try:
            await self.get_container(name)
            return True
        except docker.errors.NotFound:
            return False

    async def list_containers(self, filters: Dict[str, Any] | None = None, all: bool = False) -> List[Any]:
        """List containers."""
        return await self._run(self._client.containers.list, all=all, filters=filters)

    async def list_by_prefix(self, prefix: str) -> List[Any]:
        """All containers (running or not) whose name starts with `prefix`."""
        # the engine's name filter is a substring match
        candidates = await self.list_containers(filters={"name": prefix}, all=True)
        return [c for c in candidates if c.name.startswith(prefix)]

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container."""
        container = await self.get_container(container_id)
        await self._run(container.stop, timeout=timeout)

    async def remove_container(self, container_id: str, force: bool = False, v: bool = False) -> None:
        """Remove a container. A container that is already gone is not an error."""
        try:
            container = await self.get_container(container_id)
            await self._run(container.remove, force=force, v=v)
        except docker.errors.NotFound:
            pass

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Inspect a container. `get` fetches a fresh object, so attrs are current."""
        container = await self.get_container(container_id)
        return container.attrs

    async def logs_tail(self, container_id: str, lines: int = LOG_TAIL_LINES) -> str:
        try:
            container = await self.get_container(container_id)
            raw = await self._run(container.logs, tail=lines)
        except docker.errors.DockerException:
            return ""
        return raw.decode("utf-8", errors="replace")

    async def wait_until_running(self, name: str, timeout: float) -> Any:
        """Poll until the container is running.

        Raises:
            RuntimeClientError: if it exits first or `timeout` elapses.
        """
        deadline = time.monotonic() + timeout
        while True:
            container = await self.get_container(name)
            status = container.status
            if status == "running":
                return container
            if status in ("exited", "dead"):
                tail = await self.logs_tail(name)
                raise RuntimeClientError(f"Container {name} exited during startup (status={status}):\n{tail}")
            if time.monotonic() >= deadline:
                raise RuntimeClientError(f"Container {name} not running after {timeout:.0f}s (status={status})")
            await asyncio.sleep(RUNNING_POLL_INTERVAL)

    async def start_service(
        self,
        name: str,
        image: str,
        network: str,
        command: List[str] | None = None,
        ports: List[int] | None = None,
        volumes: Dict[str, Dict[str, str]] | None = None,
        environment: Dict[str, str] | None = None,
        entrypoint: List[str] | None = None,
        start_timeout: float = 120.0,
    ) -> StartedContainer:
        """Start a long-running service container on the run network.

        Ports listed in `ports` are published to random host ports.
        A stale container with the same name (from an earlier run) is replaced.
        """
        if await self.container_exists(name):
            logger.warning("replacing_stale_container", container_name=name)
            await self.remove_container(name, force=True)

        run_kwargs: Dict[str, Any] = {
            "command": command,
            "network": network,
            "hostname": name,
            "labels": {LABEL_NETWORK: network},
            "volumes": volumes or {},
            "environment": environment or {},
            "ports": {f"{p}/tcp": None for p in ports or []},
        }
        if entrypoint is not None:
            run_kwargs["entrypoint"] = entrypoint

        logger.info("starting_container", container_name=name, image=image)
        container = await self.run_container(image, name, **run_kwargs)
        container = await self.wait_until_running(name, start_timeout)
        host_ports = parse_host_ports(container.attrs)

        if self._stream_logs:
            self.stream_logs(container, name)

        logger.info("container_started", container_name=name, container_id=container.id[:12], host_ports=host_ports)
        return StartedContainer(container_id=container.id, name=name, host_ports=host_ports)

    async def run_to_completion(
        self,
        name: str,
        image: str,
        network: str,
        command: List[str],
        volumes: Dict[str, Dict[str, str]] | None = None,
        entrypoint: List[str] | None = None,
        timeout: float = 600.0,
    ) -> tuple[int, str]:
        """Run a one-shot container and wait for it to exit.

        Returns:
            Tuple of (exit_code, log tail). The container is removed afterwards.
        """
        if await self.container_exists(name):
            await self.remove_container(name, force=True)

        run_kwargs: Dict[str, Any] = {
            "command": command,
            "network": network,
            "labels": {LABEL_NETWORK: network},
            "volumes": volumes or {},
        }
        if entrypoint is not None:
            run_kwargs["entrypoint"] = entrypoint

        logger.info("running_job", container_name=name, image=image)
        container = await self.run_container(image, name, **run_kwargs)
        try:
            result = await asyncio.wait_for(self._run(container.wait), timeout=timeout)
        except asyncio.TimeoutError:
            raise RuntimeClientError(f"Container {name} did not finish within {timeout:.0f}s") from None

        exit_code = int(result.get("StatusCode", -1))
        tail = await self.logs_tail(name)
        await self.remove_container(name, force=True)
        self.created_containers.remove(name)
        logger.info("job_finished", container_name=name, exit_code=exit_code)
        return exit_code, tail

    def stream_logs(self, container: Any, name: str) -> None:
        """Follow container output into the debug log until the container goes away."""
        log = logger.bind(container_name=name)

        def _follow():
            try:
                for chunk in container.logs(stream=True, follow=True):
                    for line in chunk.decode("utf-8", errors="replace").splitlines():
                        log.debug("container_log", line=line)
            except (docker.errors.DockerException, OSError) as e:
                log.debug("log_stream_closed", error=str(e))

        self._log_executor.submit(_follow)

    # --- images ---------------------------------------------------------

    async def image_exists(self, image: str) -> bool:
        """Check if an image exists locally."""
        try:
            await self._run(self._client.images.get, image)
            return True
        except docker.errors.ImageNotFound:
            return False

    async def pull_image(self, image: str, tag: str) -> Any:
        """Pull an image."""
        logger.info("pulling_image", image=image, tag=tag)
        return await self._run(self._client.images.pull, image, tag=tag)

    async def ensure_image(self, image: str, tag: str) -> str:
        """Pull `image:tag` unless it is already present. Returns the reference."""
        reference = f"{image}:{tag}"
        if await self.image_exists(reference):
            logger.debug("image_cache_hit", image=reference)
            return reference
        await self.pull_image(image, tag)
        return reference

    async def build_binary_image(self, dockerfile_content: str, binary: Path, tag: str) -> Any:
        """
        Build an image whose context holds a Dockerfile plus one binary.

        Args:
            dockerfile_content: Dockerfile content as string
            binary: Local executable, added to the context as `binary`
            tag: Tag for the built image

        Returns:
            Built image object
        """
        dockerfile_bytes = dockerfile_content.encode("utf-8")

        def _build():
            context = io.BytesIO()
            with tarfile.open(fileobj=context, mode="w") as tar:
                dockerfile_info = tarfile.TarInfo(name="Dockerfile")
                dockerfile_info.size = len(dockerfile_bytes)
                tar.addfile(dockerfile_info, io.BytesIO(dockerfile_bytes))
                tar.add(str(binary), arcname="binary")

            context.seek(0)

            image, _build_logs = self._client.images.build(
                fileobj=context,
                custom_context=True,
                tag=tag,
                rm=True,
                forcerm=True,
            )
            return image

        logger.info("building_image", tag=tag, binary=str(binary))
        return await self._run(_build)
