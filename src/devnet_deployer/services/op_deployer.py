"""
op-deployer: L1 contract deployment and L2 genesis generation.

Runs four one-shot containers against the bootstrap workdir
(`<outdata>/l2-stack`):

1. `init`    writes intent.toml
2. (host)    role addresses from anvil's accounts are patched into the intent
3. `apply`   deploys contracts to L1, writes state.json
4. `inspect` writes genesis.json and rollup.json

When the deployment record matches the current config and all artifacts are
on disk, the whole stage is skipped and the prior artifacts are reused.
"""

import tomllib
from pathlib import Path

import structlog
import tomli_w

from ..config import EIP1559_DENOMINATOR, EIP1559_DENOMINATOR_CANYON, EIP1559_ELASTICITY
from ..context import ExecutionContext
from ..deployment_hash import DeploymentRecord, record_path, should_skip_bootstrap
from ..errors import BootstrapError
from ..handles import AnvilHandle, BootstrapHandle
from ..service import Service
from ..stages import Stage
from .common import CONTAINER_DATA_DIR, bind, read_json, wait_for_file

logger = structlog.get_logger()

INTENT_FILE = "intent.toml"
STATE_FILE = "state.json"
GENESIS_FILE = "genesis.json"
ROLLUP_FILE = "rollup.json"
ARTIFACT_WAIT = 30.0

# intent field -> anvil account role
CHAIN_FIELDS = {
    "baseFeeVaultRecipient": "deployer",
    "l1FeeVaultRecipient": "l1_fee_vault_recipient",
    "sequencerFeeVaultRecipient": "sequencer_fee_vault_recipient",
}
ROLE_FIELDS = {
    "l1ProxyAdminOwner": "l1_proxy_admin_owner",
    "l2ProxyAdminOwner": "l2_proxy_admin_owner",
    "systemConfigOwner": "system_config_owner",
    "unsafeBlockSigner": "unsafe_block_signer",
    "batcher": "batcher",
    "proposer": "proposer",
    "challenger": "challenger",
}


def patch_intent(intent_path: Path, l1: AnvilHandle) -> None:
    """Point every role in the intent at anvil's pre-funded accounts."""
    with intent_path.open("rb") as f:
        intent = tomllib.load(f)

    for chain in intent.get("chains", []):
        for field, role in CHAIN_FIELDS.items():
            chain[field] = l1.account(role).address
        chain["eip1559DenominatorCanyon"] = EIP1559_DENOMINATOR_CANYON
        chain["eip1559Denominator"] = EIP1559_DENOMINATOR
        chain["eip1559Elasticity"] = EIP1559_ELASTICITY
        roles = chain.setdefault("roles", {})
        for field, role in ROLE_FIELDS.items():
            roles[field] = l1.account(role).address

    with intent_path.open("wb") as f:
        tomli_w.dump(intent, f)


def read_addresses(state_path: Path) -> dict[str, str]:
    """Contract addresses of the first OP chain from op-deployer's state.json."""
    state = read_json(state_path)
    deployments = state.get("opChainDeployments") or []
    if not deployments:
        return {}
    return {k: v for k, v in deployments[0].items() if isinstance(v, str)}


class OpDeployerService(Service):
    stage = Stage.CONTRACT_BOOTSTRAP
    output = "contracts"

    def __init__(self, name: str = "op-deployer"):
        super().__init__(name)

    def _handle(self, workdir: Path, skipped: bool) -> BootstrapHandle:
        state_path = workdir / STATE_FILE
        return BootstrapHandle(
            workdir=workdir,
            genesis_path=workdir / GENESIS_FILE,
            rollup_path=workdir / ROLLUP_FILE,
            intent_path=workdir / INTENT_FILE,
            state_path=state_path,
            skipped=skipped,
            addresses=read_addresses(state_path),
        )

    async def _job(self, ctx: ExecutionContext, image: str, step: str, command: list[str], shell: bool = False):
        workdir = ctx.l2_stack_dir
        exit_code, tail = await ctx.docker.run_to_completion(
            name=ctx.topology.op_deployer(step),
            image=image,
            network=ctx.network,
            entrypoint=["sh", "-c"] if shell else ["op-deployer"],
            command=command,
            volumes=bind(workdir),
            timeout=ctx.config.bootstrap_timeout,
        )
        if exit_code != 0:
            raise BootstrapError(f"op-deployer {step} exited with code {exit_code}:\n{tail}")

    async def deploy(self, ctx: ExecutionContext) -> BootstrapHandle:
        workdir = ctx.l2_stack_dir
        workdir.mkdir(parents=True, exist_ok=True)

        if should_skip_bootstrap(ctx.config, ctx.outdata, force=ctx.force_bootstrap):
            logger.info("bootstrap_skipped", workdir=str(workdir))
            return self._handle(workdir, skipped=True)

        # a half-finished run must never look like a skip candidate
        record_path(ctx.outdata).unlink(missing_ok=True)

        l1: AnvilHandle = ctx.require("l1")
        image = await ctx.images.resolve("op_deployer", ctx.config.images.op_deployer)
        cache = f"{CONTAINER_DATA_DIR}/.cache"

        intent_path = workdir / INTENT_FILE
        intent_path.unlink(missing_ok=True)
        await self._job(
            ctx,
            image,
            "init",
            [
                "--cache-dir", cache,
                "init",
                "--l1-chain-id", str(ctx.l1_chain_id),
                "--l2-chain-ids", str(ctx.l2_chain_id),
                "--workdir", CONTAINER_DATA_DIR,
                "--intent-type", "standard-overrides",
            ],
        )
        await self._wait(intent_path)
        patch_intent(intent_path, l1)
        logger.debug("intent_patched", intent=str(intent_path))

        await self._job(
            ctx,
            image,
            "apply",
            [
                "--cache-dir", cache,
                "apply",
                "--workdir", CONTAINER_DATA_DIR,
                "--l1-rpc-url", l1.internal_url,
                "--private-key", l1.account("deployer").private_key,
            ],
        )
        await self._wait(workdir / STATE_FILE)

        for kind in ("genesis", "rollup"):
            target = workdir / f"{kind}.json"
            target.unlink(missing_ok=True)
            script = (
                f"op-deployer --cache-dir {cache} inspect {kind} --workdir {CONTAINER_DATA_DIR} "
                f"{ctx.l2_chain_id} > {CONTAINER_DATA_DIR}/{kind}.json"
            )
            await self._job(ctx, image, f"inspect-{kind}", [script], shell=True)
            await self._wait(target)

        DeploymentRecord.for_config(ctx.config).save(record_path(ctx.outdata))
        handle = self._handle(workdir, skipped=False)
        logger.info(
            "bootstrap_finished",
            workdir=str(workdir),
            dispute_game_factory=handle.dispute_game_factory,
        )
        return handle

    async def _wait(self, path: Path) -> None:
        try:
            await wait_for_file(path, ARTIFACT_WAIT)
        except TimeoutError as e:
            raise BootstrapError(str(e)) from e
