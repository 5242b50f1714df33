"""
The workload-nodes stage: every L2 node pair plus the units that follow them.

Start order inside the stage:

1. all node pairs, concurrently; each kona-node is given every other one
   as a p2p bootnode
2. batcher, proposer, challenger and, with more than one sequencer, the
   coordinator, concurrently, against the started node handles
"""

import structlog

from ..chain import join_all
from ..context import ExecutionContext
from ..handles import L2StackHandle
from ..service import Service, deploy_unit
from ..stages import Stage
from .common import internal_url
from .conductor import CoordinatorService
from .l2_node import RETH_HTTP_PORT, L2NodeService, node_dir
from .op_stack import BatcherService, ChallengerService, ProposerService
from .p2p import P2P_KEY_FILE, load_or_create_p2p_key

logger = structlog.get_logger()


class L2StackService(Service):
    stage = Stage.WORKLOAD_NODES
    output = "l2_stack"

    def __init__(self, name: str = "l2-stack"):
        super().__init__(name)

    def node_units(self, ctx: ExecutionContext) -> list[L2NodeService]:
        nodes = ctx.topology.nodes
        # validators forward transactions to the active sequencer by name
        sequencer_http = internal_url(nodes[0].execution, RETH_HTTP_PORT)
        # keys exist before any pair starts, so every node can list every other as a bootnode
        enodes = [
            load_or_create_p2p_key(node_dir(ctx.outdata, names.execution) / P2P_KEY_FILE).enode(names.consensus)
            for names in nodes
        ]
        return [
            L2NodeService(
                names,
                sequencer_http=sequencer_http,
                bootnodes=[enode for j, enode in enumerate(enodes) if j != i],
            )
            for i, names in enumerate(nodes)
        ]

    def dependent_units(self, ctx: ExecutionContext) -> list[Service]:
        topology = ctx.topology
        units: list[Service] = [
            BatcherService(topology.batcher),
            ProposerService(topology.proposer),
            ChallengerService(topology.challenger),
        ]
        if topology.roles.has_coordinator:
            units.append(CoordinatorService(topology.name("op-conductor")))
        return units

    async def deploy(self, ctx: ExecutionContext) -> L2StackHandle:
        roles = ctx.topology.roles
        logger.info(
            "l2_stack_starting",
            sequencers=len(roles.sequencers),
            validators=len(roles.validators),
            coordinator=roles.has_coordinator,
        )

        nodes = tuple(await join_all(deploy_unit(unit, ctx) for unit in self.node_units(ctx)))
        ctx.cancel.raise_if_cancelled(self.stage)
        ctx.publish(self.stage, "l2_nodes", nodes)

        dependents = self.dependent_units(ctx)
        node_ctx = ctx.with_nodes(nodes)
        batcher, proposer, challenger, *rest = await join_all(deploy_unit(unit, node_ctx) for unit in dependents)

        handle = L2StackHandle(
            nodes=nodes,
            batcher=batcher,
            proposer=proposer,
            challenger=challenger,
            coordinator=rest[0] if rest else None,
        )
        logger.info(
            "l2_stack_started",
            l2_chain_id=ctx.l2_chain_id,
            nodes=[n.name for n in nodes],
            sequencer_rpc=nodes[0].execution.host_url,
        )
        return handle
