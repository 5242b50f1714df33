"""One L2 node unit: op-reth (execution) paired with kona-node (consensus)."""

import secrets
from pathlib import Path
from typing import Sequence

import structlog

from ..context import ExecutionContext
from ..handles import L2NodeHandle
from ..roles import NodeUnit
from ..service import Service
from ..stages import Stage
from ..topology import NodeNames
from .common import CONTAINER_DATA_DIR, bind, container_handle, internal_url
from .p2p import KONA_P2P_PORT, P2P_KEY_FILE, P2PKey, load_or_create_p2p_key

logger = structlog.get_logger()

RETH_HTTP_PORT = 9545
RETH_WS_PORT = 9546
RETH_AUTH_PORT = 9551
RETH_METRICS_PORT = 9001
KONA_RPC_PORT = 7545
KONA_METRICS_PORT = 7300

NODE_DIR = "/node"
JWT_FILE = "jwt.hex"


def node_dir(outdata: Path, execution_name: str) -> Path:
    return outdata / "nodes" / execution_name


def ensure_jwt_secret(path: Path) -> Path:
    """Create the engine API secret shared by the pair, keeping an existing one."""
    if not path.is_file():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(secrets.token_hex(32))
        path.chmod(0o600)
    return path


def reth_command(unit: NodeUnit, sequencer_http: str | None) -> list[str]:
    cmd = [
        "node",
        "--chain", f"{CONTAINER_DATA_DIR}/genesis.json",
        "--datadir", f"{NODE_DIR}/reth",
        "--http",
        "--http.addr", "0.0.0.0",
        "--http.port", str(RETH_HTTP_PORT),
        "--http.api", "eth,net,web3,debug,txpool,admin",
        "--ws",
        "--ws.addr", "0.0.0.0",
        "--ws.port", str(RETH_WS_PORT),
        "--authrpc.addr", "0.0.0.0",
        "--authrpc.port", str(RETH_AUTH_PORT),
        "--authrpc.jwtsecret", f"{NODE_DIR}/{JWT_FILE}",
        "--metrics", f"0.0.0.0:{RETH_METRICS_PORT}",
        "--disable-discovery",
        "--log.stdout.format", "terminal",
    ]
    if not unit.is_sequencer and sequencer_http:
        cmd += ["--rollup.sequencer-http", sequencer_http]
    return cmd


def kona_command(
    unit: NodeUnit,
    ctx: ExecutionContext,
    reth_name: str,
    p2p_key: P2PKey,
    bootnodes: Sequence[str] = (),
) -> list[str]:
    l1 = ctx.require("l1")
    cmd = [
        "node",
        "--mode", unit.role.value,
        "--l1", l1.internal_url,
        "--l1-beacon", l1.internal_url,
        "--l1.slot-duration", str(ctx.config.block_time),
        "--l2", internal_url(reth_name, RETH_AUTH_PORT),
        "--l2.jwt-secret", f"{NODE_DIR}/{JWT_FILE}",
        "--rollup-cfg", f"{CONTAINER_DATA_DIR}/rollup.json",
        "--rpc.port", str(KONA_RPC_PORT),
        "--metrics.enabled",
        "--metrics.port", str(KONA_METRICS_PORT),
        "--p2p.priv.raw", p2p_key.private_key,
        "--p2p.listen.ip", "0.0.0.0",
        "--p2p.listen.tcp", str(KONA_P2P_PORT),
        "--p2p.listen.udp", str(KONA_P2P_PORT),
    ]
    if bootnodes:
        # unsafe blocks reach validators and standby sequencers over gossip
        cmd += ["--p2p.bootnodes", ",".join(bootnodes)]
    if unit.is_sequencer:
        cmd += ["--p2p.sequencer.key", l1.account("unsafe_block_signer").private_key]
    if unit.standby:
        # standby sequencers stay dormant until the coordinator promotes them
        cmd += ["--sequencer.stopped"]
    return cmd


class L2NodeService(Service):
    """Starts one execution/consensus pair. Never talks to sibling units."""

    stage = Stage.WORKLOAD_NODES

    def __init__(self, names: NodeNames, sequencer_http: str | None = None, bootnodes: Sequence[str] = ()):
        super().__init__(names.execution)
        self.names = names
        self.sequencer_http = sequencer_http
        self.bootnodes = tuple(bootnodes)

    @property
    def unit(self) -> NodeUnit:
        return self.names.unit

    async def deploy(self, ctx: ExecutionContext) -> L2NodeHandle:
        images = ctx.config.images
        data = node_dir(ctx.outdata, self.names.execution)
        data.mkdir(parents=True, exist_ok=True)
        jwt_path = ensure_jwt_secret(data / JWT_FILE)
        p2p_key = load_or_create_p2p_key(data / P2P_KEY_FILE)

        volumes = {**bind(ctx.l2_stack_dir, CONTAINER_DATA_DIR, "ro"), **bind(data, NODE_DIR)}

        reth_image = await ctx.images.resolve("op_reth", images.op_reth)
        execution = await ctx.docker.start_service(
            name=self.names.execution,
            image=reth_image,
            network=ctx.network,
            command=reth_command(self.unit, self.sequencer_http),
            ports=[RETH_HTTP_PORT, RETH_WS_PORT],
            volumes=volumes,
            start_timeout=self.start_timeout(ctx),
        )

        kona_image = await ctx.images.resolve("kona_node", images.kona_node)
        consensus = await ctx.docker.start_service(
            name=self.names.consensus,
            image=kona_image,
            network=ctx.network,
            command=kona_command(self.unit, ctx, self.names.execution, p2p_key, self.bootnodes),
            ports=[KONA_RPC_PORT],
            volumes=volumes,
            start_timeout=self.start_timeout(ctx),
        )

        handle = L2NodeHandle(
            index=self.unit.index,
            role=self.unit.role,
            active=self.unit.active,
            execution=container_handle(execution, RETH_HTTP_PORT),
            consensus=container_handle(consensus, KONA_RPC_PORT),
            jwt_path=jwt_path,
            enode=p2p_key.enode(self.names.consensus),
        )
        logger.info(
            "l2_node_started",
            role=self.unit.role.value,
            index=self.unit.index,
            active=self.unit.active,
            l2_http_rpc=handle.execution.host_url,
            kona_node_rpc=handle.consensus.host_url,
        )
        return handle
