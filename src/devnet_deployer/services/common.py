"""Small helpers shared by the service modules."""

import asyncio
import json
import time
from pathlib import Path
from typing import Any

from ..config import ImageRef
from ..docker_ops import StartedContainer
from ..handles import ContainerHandle

CONTAINER_DATA_DIR = "/data"
FILE_POLL_INTERVAL = 0.25


def bind(host_path: Path, container_path: str = CONTAINER_DATA_DIR, mode: str = "rw") -> dict[str, dict[str, str]]:
    """docker-py volume spec for one bind mount."""
    return {str(host_path.resolve()): {"bind": container_path, "mode": mode}}


def program_command(ref: ImageRef, program: str, args: list[str]) -> list[str]:
    """Registry images take the program name first; local binary images run /binary directly."""
    if ref.binary is not None:
        return list(args)
    return [program, *args]


def internal_url(container_name: str, port: int, scheme: str = "http") -> str:
    return f"{scheme}://{container_name}:{port}"


def host_url(started: StartedContainer, port: int, scheme: str = "http") -> str | None:
    host_port = started.host_ports.get(port)
    if host_port is None:
        return None
    return f"{scheme}://localhost:{host_port}"


def container_handle(started: StartedContainer, port: int | None = None) -> ContainerHandle:
    if port is None:
        return ContainerHandle(container_id=started.container_id, container_name=started.name)
    return ContainerHandle(
        container_id=started.container_id,
        container_name=started.name,
        internal_url=internal_url(started.name, port),
        host_url=host_url(started, port),
    )


async def wait_for_file(path: Path, timeout: float) -> None:
    """Wait until a container has written `path` (visible through a bind mount).

    Raises:
        TimeoutError: if the file does not appear in time.
    """
    deadline = time.monotonic() + timeout
    while not (path.is_file() and path.stat().st_size > 0):
        if time.monotonic() >= deadline:
            raise TimeoutError(f"{path} was not created within {timeout:.0f}s")
        await asyncio.sleep(FILE_POLL_INTERVAL)


def read_json(path: Path) -> Any:
    return json.loads(path.read_text())
