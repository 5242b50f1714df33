"""
Config resolution - turns a partial DeploymentConfig into a fully-resolved one.

Everything a later run needs to reproduce a deployment is decided here, once,
and then persisted with the config:

- L1 chain id: detected from the fork RPC, or random in local mode
- genesis timestamp and fork block (fork mode pins the latest block)
- L2 chain id, network name and output directory
- content hashes of local binaries

Usage:
    config = await resolve_config(build_config(l2_node_count=5))
"""

import random
import time
from pathlib import Path
from typing import Any

import httpx
import structlog

from .config import DeploymentConfig, ImagesConfig
from .errors import ConfigurationError
from .image_builder import fill_binary_hash
from .rpc import JsonRpcClient, RPCError

logger = structlog.get_logger()

CHAIN_ID_RANGE = (10000, 99999)
NETWORK_PREFIX = "devnet"


def random_chain_id() -> int:
    return random.randint(*CHAIN_ID_RANGE)


def default_network_name(l2_chain_id: int) -> str:
    return f"{NETWORK_PREFIX}-{l2_chain_id}"


def default_outdata(network_name: str) -> Path:
    return Path(f"data-{network_name}")


def genesis_from_block(block: dict[str, Any], block_time: int) -> int:
    """Backdate genesis so L2 block heights line up with the forked L1 history.

    Clamped at zero for chains older than `block_time * number` seconds.
    """
    timestamp = int(block["timestamp"], 16)
    number = int(block["number"], 16)
    return max(timestamp - block_time * number, 0)


def resolve_images(images: ImagesConfig) -> ImagesConfig:
    return images.model_copy(update={name: fill_binary_hash(ref) for name, ref in images.items()})


async def resolve_l1(config: DeploymentConfig, rpc: JsonRpcClient) -> dict[str, Any]:
    """L1 chain id, genesis timestamp and fork block for the config's mode."""
    updates: dict[str, Any] = {}
    if not config.fork_mode:
        if config.l1_chain_id is None:
            updates["l1_chain_id"] = random_chain_id()
        if config.genesis_timestamp is None:
            updates["genesis_timestamp"] = int(time.time())
        logger.info("l1_local_mode", l1_chain_id=updates.get("l1_chain_id", config.l1_chain_id))
        return updates

    url = config.l1_rpc_url
    try:
        if config.l1_chain_id is None:
            updates["l1_chain_id"] = await rpc.chain_id(url)
            logger.info("l1_chain_id_detected", l1_chain_id=updates["l1_chain_id"], rpc_url=url)
        if config.fork_block_number is None or config.genesis_timestamp is None:
            block = await rpc.latest_block(url)
            if config.fork_block_number is None:
                updates["fork_block_number"] = int(block["number"], 16)
            if config.genesis_timestamp is None:
                updates["genesis_timestamp"] = genesis_from_block(block, config.block_time)
    except (httpx.HTTPError, RPCError, KeyError, ValueError) as e:
        raise ConfigurationError(f"Cannot query L1 RPC {url}: {e}") from e
    return updates


async def resolve_config(config: DeploymentConfig, rpc: JsonRpcClient | None = None) -> DeploymentConfig:
    """Fill every unresolved field. Already-set values are never changed.

    Raises:
        ConfigurationError: if the fork RPC is unreachable or a binary is missing.
    """
    owns_rpc = rpc is None
    rpc = rpc or JsonRpcClient(timeout=config.health_timeout)
    try:
        updates = await resolve_l1(config, rpc)
    finally:
        if owns_rpc:
            await rpc.close()

    l2_chain_id = config.l2_chain_id or random_chain_id()
    network_name = config.network_name or default_network_name(l2_chain_id)
    outdata = (config.outdata or default_outdata(network_name)).expanduser().resolve()

    updates.update(
        l2_chain_id=l2_chain_id,
        network_name=network_name,
        outdata=outdata,
        images=resolve_images(config.images),
    )
    resolved = config.model_copy(update=updates)

    logger.info(
        "config_resolved",
        network_name=network_name,
        l1_chain_id=resolved.l1_chain_id,
        l2_chain_id=l2_chain_id,
        outdata=str(outdata),
        fork_block_number=resolved.fork_block_number,
        genesis_timestamp=resolved.genesis_timestamp,
    )
    return resolved
