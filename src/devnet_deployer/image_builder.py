"""
ImageBuilder - wraps local binaries into runnable images.

Responsibilities:
- Compute a content hash for a binary (the cache key)
- Generate the minimal Dockerfile that runs it
- Resolve every configured service image: pull registry images, build or
  reuse local-binary images

Local images are tagged `devnet-<network>-<service>-local:<hash12>`, so an
unchanged binary is never rebuilt and a changed one always is.
"""

import asyncio
import hashlib
from pathlib import Path

import structlog

from .config import ImageRef
from .docker_ops import DockerClientWrapper
from .errors import ConfigurationError

logger = structlog.get_logger()

BASE_IMAGE = "debian:trixie-slim"
ORCHESTRATOR_PREFIX = "devnet"
HASH_LENGTH = 12


def compute_binary_hash(path: Path) -> str:
    """
    Compute the content hash of a binary.

    Returns:
        Full lowercase hex sha256; tags use the first 12 chars.
    """
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_dockerfile(base_image: str = BASE_IMAGE) -> str:
    lines = [
        f"FROM {base_image}",
        "COPY binary /binary",
        "RUN chmod +x /binary",
        'ENTRYPOINT ["/binary"]',
    ]
    return "\n".join(lines) + "\n"


def local_image_tag(network: str, service: str, binary_hash: str) -> str:
    """
    Docker image tag for a locally built service binary.

    Returns:
        e.g. "devnet-devnet-42-op-reth-local:a1b2c3d4e5f6"
    """
    service = service.replace("_", "-")
    return f"{ORCHESTRATOR_PREFIX}-{network}-{service}-local:{binary_hash[:HASH_LENGTH]}"


def fill_binary_hash(ref: ImageRef) -> ImageRef:
    """Return `ref` with `binary_sha256` computed from the binary on disk."""
    if ref.binary is None:
        return ref
    binary = ref.binary.expanduser()
    if not binary.is_file():
        raise ConfigurationError(f"Binary not found: {binary}")
    return ref.model_copy(update={"binary": binary.resolve(), "binary_sha256": compute_binary_hash(binary)})


class ImageResolver:
    """
    Turns an ImageRef into a runnable image reference.

    Each service is resolved once per run; concurrent callers share the
    same pull or build.

    Usage:
        resolver = ImageResolver(docker, network="devnet-42")
        image = await resolver.resolve("op_reth", config.images.op_reth)
    """

    def __init__(self, docker: DockerClientWrapper, network: str):
        self.docker = docker
        self.network = network
        self._pending: dict[str, asyncio.Future] = {}

    async def resolve(self, service: str, ref: ImageRef) -> str:
        future = self._pending.get(service)
        if future is None:
            future = asyncio.ensure_future(self._resolve(service, ref))
            self._pending[service] = future
        # one cancelled waiter must not cancel the shared pull
        return await asyncio.shield(future)

    async def _resolve(self, service: str, ref: ImageRef) -> str:
        if ref.binary is None:
            return await self.docker.ensure_image(ref.image, ref.tag)

        binary_hash = ref.binary_sha256 or compute_binary_hash(ref.binary)
        tag = local_image_tag(self.network, service, binary_hash)
        if await self.docker.image_exists(tag):
            logger.info("image_cache_hit", service=service, tag=tag)
            return tag

        logger.info("image_cache_miss", service=service, tag=tag)
        await self.docker.build_binary_image(generate_dockerfile(), ref.binary, tag)
        return tag
