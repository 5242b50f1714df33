"""
Coordinator unit: one op-conductor per sequencer, forming a Raft cluster.

Only deployed when more than one sequencer exists. The conductor next to the
active sequencer bootstraps the cluster and starts first; the standby
conductors join it afterwards. Leader election after that is the conductors'
business, not ours.
"""

import structlog

from ..chain import join_all
from ..context import ExecutionContext
from ..errors import ConfigurationError
from ..handles import ContainerHandle, CoordinatorHandle, L2NodeHandle
from ..service import Service
from ..stages import Stage
from .common import CONTAINER_DATA_DIR, bind, container_handle, program_command
from .l2_node import node_dir

logger = structlog.get_logger()

RPC_PORT = 8547
CONSENSUS_PORT = 50050


def conductor_command(name: str, sequencer: L2NodeHandle, bootstrap: bool, min_peer_count: int = 1) -> list[str]:
    cmd = [
        "--consensus.addr", name,
        "--consensus.port", str(CONSENSUS_PORT),
        "--execution.rpc", sequencer.execution.internal_url,
        "--node.rpc", sequencer.consensus.internal_url,
        "--raft.server.id", sequencer.name,
        "--raft.storage.dir", "/conductor/raft",
        "--rollup.config", f"{CONTAINER_DATA_DIR}/rollup.json",
        "--rpc.addr", "0.0.0.0",
        "--rpc.port", str(RPC_PORT),
        "--healthcheck.interval", "5",
        "--healthcheck.unsafe-interval", "600",
        "--healthcheck.min-peer-count", str(min_peer_count),
    ]
    if bootstrap:
        cmd.append("--raft.bootstrap")
    return cmd


class CoordinatorService(Service):
    stage = Stage.WORKLOAD_NODES

    def __init__(self, name: str = "op-conductor"):
        super().__init__(name)

    async def _start(
        self, ctx: ExecutionContext, image: str, name: str, sequencer: L2NodeHandle, bootstrap: bool
    ) -> ContainerHandle:
        # peers can only be the other nodes of this run
        min_peers = min(1, len(ctx.l2_nodes) - 1)
        ref = ctx.config.images.op_conductor
        data = node_dir(ctx.outdata, sequencer.name) / "conductor"
        data.mkdir(parents=True, exist_ok=True)
        started = await ctx.docker.start_service(
            name=name,
            image=image,
            network=ctx.network,
            command=program_command(ref, "op-conductor", conductor_command(name, sequencer, bootstrap, min_peers)),
            ports=[RPC_PORT],
            volumes={**bind(ctx.l2_stack_dir, CONTAINER_DATA_DIR, "ro"), **bind(data, "/conductor")},
            start_timeout=self.start_timeout(ctx),
        )
        logger.info(
            "conductor_started",
            container_name=name,
            server_id=sequencer.name,
            bootstrap=bootstrap,
        )
        return container_handle(started, RPC_PORT)

    async def deploy(self, ctx: ExecutionContext) -> CoordinatorHandle:
        sequencers = ctx.sequencer_nodes
        expected = len(ctx.topology.roles.sequencers)
        if len(sequencers) != expected or len(sequencers) < 2:
            raise ConfigurationError(
                f"Coordinator needs every sequencer handle (expected {expected}, got {len(sequencers)})"
            )
        names = ctx.topology.conductors

        image = await ctx.images.resolve("op_conductor", ctx.config.images.op_conductor)
        leader = await self._start(ctx, image, names[0], sequencers[0], bootstrap=True)
        followers = await join_all(
            self._start(ctx, image, name, sequencer, bootstrap=False)
            for name, sequencer in zip(names[1:], sequencers[1:])
        )

        return CoordinatorHandle(
            sequencers=tuple(s.name for s in sequencers),
            conductors=(leader, *followers),
        )

