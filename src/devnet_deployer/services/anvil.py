"""Anvil: the L1 chain, either standalone or forked from a live RPC."""

import structlog

from ..context import ExecutionContext
from ..errors import RuntimeClientError
from ..handles import ACCOUNT_ROLES, Account, AnvilHandle
from ..service import Service
from ..stages import Stage
from .common import CONTAINER_DATA_DIR, bind, host_url, internal_url, read_json, wait_for_file

logger = structlog.get_logger()

RPC_PORT = 8545
ACCOUNT_COUNT = 20
CONFIG_OUT = "anvil.json"
STATE_FILE = "anvil-state.json"


def build_command(ctx: ExecutionContext) -> list[str]:
    config = ctx.config
    cmd = [
        "--host", "0.0.0.0",
        "--port", str(RPC_PORT),
        "--chain-id", str(ctx.l1_chain_id),
        "--block-time", str(config.block_time),
        "--accounts", str(ACCOUNT_COUNT),
        "--config-out", f"{CONTAINER_DATA_DIR}/{CONFIG_OUT}",
        # persisted so a skipped bootstrap still finds its L1 contracts
        "--state", f"{CONTAINER_DATA_DIR}/{STATE_FILE}",
    ]
    if config.genesis_timestamp is not None:
        cmd += ["--timestamp", str(config.genesis_timestamp)]
    if config.l1_rpc_url is not None:
        cmd += ["--fork-url", config.l1_rpc_url]
        if config.fork_block_number is not None:
            cmd += ["--fork-block-number", str(config.fork_block_number)]
    return cmd


def parse_accounts(data: dict) -> tuple[Account, ...]:
    """Pair anvil's `available_accounts` with `private_keys`."""
    addresses = data.get("available_accounts") or []
    keys = data.get("private_keys") or []
    if len(addresses) < len(ACCOUNT_ROLES) or len(keys) < len(ACCOUNT_ROLES):
        raise RuntimeClientError(
            f"Anvil reported {min(len(addresses), len(keys))} accounts, need at least {len(ACCOUNT_ROLES)}"
        )
    return tuple(Account(address=a.lower(), private_key=k) for a, k in zip(addresses, keys))


class AnvilService(Service):
    stage = Stage.INFRASTRUCTURE
    output = "l1"

    def __init__(self, name: str = "anvil"):
        super().__init__(name)

    async def deploy(self, ctx: ExecutionContext) -> AnvilHandle:
        data_dir = ctx.outdata / "anvil"
        data_dir.mkdir(parents=True, exist_ok=True)
        config_out = data_dir / CONFIG_OUT
        # a stale file from the previous run would be read before anvil rewrites it
        config_out.unlink(missing_ok=True)

        image = await ctx.images.resolve("anvil", ctx.config.images.anvil)
        started = await ctx.docker.start_service(
            name=ctx.topology.anvil,
            image=image,
            network=ctx.network,
            entrypoint=["anvil"],
            command=build_command(ctx),
            ports=[RPC_PORT],
            volumes=bind(data_dir),
            start_timeout=self.start_timeout(ctx),
        )

        await wait_for_file(config_out, self.start_timeout(ctx))
        accounts = parse_accounts(read_json(config_out))

        handle = AnvilHandle(
            container_id=started.container_id,
            container_name=started.name,
            internal_url=internal_url(started.name, RPC_PORT),
            host_url=host_url(started, RPC_PORT),
            chain_id=ctx.l1_chain_id,
            accounts=accounts,
        )
        logger.info(
            "l1_started",
            l1_chain_id=ctx.l1_chain_id,
            rpc=handle.host_url,
            fork_url=ctx.config.l1_rpc_url,
        )
        return handle
