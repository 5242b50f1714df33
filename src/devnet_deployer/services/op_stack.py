"""Batcher, proposer and challenger. Each follows the active sequencer."""

from abc import abstractmethod

from ..context import ExecutionContext
from ..errors import BootstrapError, ConfigurationError
from ..handles import AnvilHandle, BootstrapHandle, ContainerHandle, L2NodeHandle
from ..service import Service
from ..stages import Stage
from .common import CONTAINER_DATA_DIR, bind, container_handle, program_command

BATCHER_RPC_PORT = 8548
BATCHER_METRICS_PORT = 7301
PROPOSER_RPC_PORT = 8560
PROPOSER_METRICS_PORT = 7302
CHALLENGER_METRICS_PORT = 7303

# permissioned dispute game
GAME_TYPE = 254


class FollowerService(Service):
    """A unit that needs L1, the bootstrap outputs and the active sequencer."""

    stage = Stage.WORKLOAD_NODES
    image_key: str
    program: str

    def inputs(self, ctx: ExecutionContext) -> tuple[AnvilHandle, BootstrapHandle, L2NodeHandle]:
        l1 = ctx.require("l1")
        contracts = ctx.require("contracts")
        active = next((n for n in ctx.require("l2_nodes") if n.active), None)
        if active is None:
            raise ConfigurationError("No active sequencer among started nodes")
        return l1, contracts, active

    def game_factory(self, contracts: BootstrapHandle) -> str:
        address = contracts.dispute_game_factory
        if not address:
            raise BootstrapError(f"DisputeGameFactoryProxy not found in {contracts.state_path}")
        return address

    @abstractmethod
    def arguments(self, ctx: ExecutionContext) -> list[str]:
        """Program arguments, without the program name."""
        pass

    def ports(self) -> list[int]:
        return []

    async def deploy(self, ctx: ExecutionContext) -> ContainerHandle:
        ref = getattr(ctx.config.images, self.image_key)
        image = await ctx.images.resolve(self.image_key, ref)
        ports = self.ports()
        started = await ctx.docker.start_service(
            name=self.name,
            image=image,
            network=ctx.network,
            command=program_command(ref, self.program, self.arguments(ctx)),
            ports=ports,
            volumes=self.volumes(ctx),
            start_timeout=self.start_timeout(ctx),
        )
        return container_handle(started, ports[0] if ports else None)

    def volumes(self, ctx: ExecutionContext) -> dict:
        return bind(ctx.l2_stack_dir, CONTAINER_DATA_DIR, "ro")


class BatcherService(FollowerService):
    image_key = "op_batcher"
    program = "op-batcher"

    def ports(self) -> list[int]:
        return [BATCHER_RPC_PORT]

    def arguments(self, ctx: ExecutionContext) -> list[str]:
        l1, _contracts, sequencer = self.inputs(ctx)
        return [
            "--l1-eth-rpc", l1.internal_url,
            "--l2-eth-rpc", sequencer.execution.internal_url,
            "--rollup-rpc", sequencer.consensus.internal_url,
            "--private-key", l1.account("batcher").private_key,
            "--poll-interval", "1s",
            "--sub-safety-margin", "6",
            "--max-l1-tx-size-bytes", "120000",
            "--target-num-frames", "1",
            "--data-availability-type", "calldata",
            "--throttle.unsafe-da-bytes-lower-threshold", "0",
            "--rpc.addr", "0.0.0.0",
            "--rpc.port", str(BATCHER_RPC_PORT),
            "--rpc.enable-admin",
            "--metrics.enabled",
            "--metrics.addr", "0.0.0.0",
            "--metrics.port", str(BATCHER_METRICS_PORT),
        ]


class ProposerService(FollowerService):
    image_key = "op_proposer"
    program = "op-proposer"

    def ports(self) -> list[int]:
        return [PROPOSER_RPC_PORT]

    def arguments(self, ctx: ExecutionContext) -> list[str]:
        l1, contracts, sequencer = self.inputs(ctx)
        interval = f"{ctx.config.block_time}s"
        return [
            "--l1-eth-rpc", l1.internal_url,
            "--rollup-rpc", sequencer.consensus.internal_url,
            "--game-factory-address", self.game_factory(contracts),
            "--game-type", str(GAME_TYPE),
            "--proposal-interval", interval,
            "--poll-interval", interval,
            "--private-key", l1.account("proposer").private_key,
            "--allow-non-finalized",
            "--num-confirmations", "1",
            "--rpc.addr", "0.0.0.0",
            "--rpc.port", str(PROPOSER_RPC_PORT),
            "--metrics.enabled",
            "--metrics.addr", "0.0.0.0",
            "--metrics.port", str(PROPOSER_METRICS_PORT),
        ]


class ChallengerService(FollowerService):
    image_key = "op_challenger"
    program = "op-challenger"

    def volumes(self, ctx: ExecutionContext) -> dict:
        data = ctx.outdata / "challenger"
        data.mkdir(parents=True, exist_ok=True)
        return {**super().volumes(ctx), **bind(data, "/challenger")}

    def arguments(self, ctx: ExecutionContext) -> list[str]:
        l1, contracts, sequencer = self.inputs(ctx)
        return [
            "--l1-eth-rpc", l1.internal_url,
            "--l1-beacon", l1.internal_url,
            "--l2-eth-rpc", sequencer.execution.internal_url,
            "--rollup-rpc", sequencer.consensus.internal_url,
            "--game-factory-address", self.game_factory(contracts),
            "--game-allowlist", str(GAME_TYPE),
            "--trace-type", "permissioned",
            "--private-key", l1.account("challenger").private_key,
            "--datadir", "/challenger",
            "--rollup-config", f"{CONTAINER_DATA_DIR}/rollup.json",
            "--l2-genesis", f"{CONTAINER_DATA_DIR}/genesis.json",
            "--metrics.enabled",
            "--metrics.addr", "0.0.0.0",
            "--metrics.port", str(CHALLENGER_METRICS_PORT),
        ]
