"""
Cleanup coordinator.

Stops and removes containers and the run network. Cleanup is idempotent:
anything already stopped or removed is logged and skipped, and no function in
this module ever raises. The output directory is never touched.
"""

from dataclasses import dataclass, field

import docker.errors
import structlog

from .docker_ops import DockerClientWrapper
from .errors import CleanupError

logger = structlog.get_logger()

STOP_TIMEOUT = 10


@dataclass
class CleanupResult:
    containers_removed: list[str] = field(default_factory=list)
    network_removed: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def nothing_to_do(self) -> bool:
        return not self.containers_removed and self.network_removed is None


def network_for_prefix(prefix: str) -> str:
    return f"{prefix}-network"


async def _stop_and_remove(docker_client: DockerClientWrapper, name: str, result: CleanupResult) -> None:
    try:
        try:
            await docker_client.stop_container(name, timeout=STOP_TIMEOUT)
        except docker.errors.NotFound:
            raise
        except docker.errors.APIError as e:
            # already stopped; removal below decides
            logger.debug("container_stop_skipped", container_name=name, error=str(e))
        await docker_client.remove_container(name, force=True, v=False)
        result.containers_removed.append(name)
        logger.info("container_removed", container_name=name)
    except docker.errors.NotFound:
        logger.debug("container_already_removed", container_name=name)
    except (docker.errors.DockerException, OSError) as e:
        err = CleanupError(f"Failed to remove container {name}: {e}", unit=name)
        result.errors.append(str(err))
        logger.warning("container_cleanup_failed", container_name=name, error=str(e))


async def _remove_network(docker_client: DockerClientWrapper, network: str, result: CleanupResult) -> None:
    try:
        if await docker_client.remove_network(network):
            result.network_removed = network
            logger.info("network_removed", network_name=network)
    except (docker.errors.DockerException, OSError) as e:
        err = CleanupError(f"Failed to remove network {network}: {e}")
        result.errors.append(str(err))
        logger.warning("network_cleanup_failed", network_name=network, error=str(e))


async def cleanup_run(docker_client: DockerClientWrapper, network: str) -> CleanupResult:
    """Remove everything this run created, newest first, then the network."""
    result = CleanupResult()
    containers = list(reversed(docker_client.created_containers))
    logger.info("cleanup_started", containers=len(containers), network_name=network)
    for name in containers:
        await _stop_and_remove(docker_client, name, result)
    docker_client.created_containers.clear()
    await _remove_network(docker_client, network, result)
    logger.info("cleanup_finished", removed=len(result.containers_removed), errors=len(result.errors))
    return result


async def cleanup_by_prefix(prefix: str, docker_client: DockerClientWrapper | None = None) -> CleanupResult:
    """Remove every container whose name starts with `prefix` and `<prefix>-network`.

    Works against containers started by an earlier, already exited process.
    """
    result = CleanupResult()
    if not prefix:
        result.errors.append("Refusing to clean up with an empty prefix")
        return result

    try:
        docker_client = docker_client or DockerClientWrapper(stream_logs=False)
        containers = await docker_client.list_by_prefix(prefix)
    except (docker.errors.DockerException, OSError) as e:
        result.errors.append(str(CleanupError(f"Container engine unavailable: {e}")))
        logger.warning("cleanup_engine_unavailable", error=str(e))
        return result

    # newest first approximates reverse dependency order
    containers.sort(key=lambda c: c.attrs.get("Created", ""), reverse=True)
    logger.info("cleanup_started", prefix=prefix, containers=len(containers))
    for container in containers:
        await _stop_and_remove(docker_client, container.name, result)
    await _remove_network(docker_client, network_for_prefix(prefix), result)
    return result
