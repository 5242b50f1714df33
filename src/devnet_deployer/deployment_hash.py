"""
Deployment hash - decides whether contract bootstrap can be skipped.

The hash covers every input that changes what the bootstrap stage (or the
deployment built on it) produces: chain ids, fork source, genesis timestamp,
block time, node/role counts and image/binary identities. Cosmetic inputs
(verbosity, detach, no-cleanup, monitoring, network name, output path) are
excluded so they never force a redeploy.

After a successful bootstrap a DeploymentRecord is written to
`<outdata>/l2-stack/.deployment-version.json`. On the next run the stage is
skipped only if the record's hash matches and every artifact is on disk.
"""

import hashlib
import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import structlog

from . import __version__
from .config import (
    EIP1559_DENOMINATOR,
    EIP1559_DENOMINATOR_CANYON,
    EIP1559_ELASTICITY,
    DeploymentConfig,
)

logger = structlog.get_logger()

L2_STACK_DIR = "l2-stack"
RECORD_FILENAME = ".deployment-version.json"
BOOTSTRAP_ARTIFACTS = ("genesis.json", "rollup.json", "intent.toml", "state.json")


def hash_inputs(config: DeploymentConfig) -> dict[str, Any]:
    """The deployment-relevant subset of a config, as plain JSON values."""
    return {
        "l1_chain_id": config.l1_chain_id,
        "l2_chain_id": config.l2_chain_id,
        "fork_url": config.l1_rpc_url,
        "fork_block_number": config.fork_block_number,
        "timestamp": config.genesis_timestamp,
        "block_time": config.block_time,
        "l2_node_count": config.l2_node_count,
        "sequencer_count": config.sequencer_count,
        "images": {name: ref.hash_key() for name, ref in config.images.items()},
        "eip1559_denominator": EIP1559_DENOMINATOR,
        "eip1559_denominator_canyon": EIP1559_DENOMINATOR_CANYON,
        "eip1559_elasticity": EIP1559_ELASTICITY,
    }


def compute_config_hash(config: DeploymentConfig) -> str:
    """
    Compute the deployment hash of a configuration.

    Returns:
        64-character lowercase hex sha256

    Note:
        - Keys are sorted, so field enumeration order never matters
        - Same logical inputs produce the same hash in every process
    """
    canonical = json.dumps(hash_inputs(config), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def l2_stack_dir(outdata: Path) -> Path:
    return outdata / L2_STACK_DIR


def record_path(outdata: Path) -> Path:
    return l2_stack_dir(outdata) / RECORD_FILENAME


@dataclass
class DeploymentRecord:
    config_hash: str
    deployed_at: int
    version: str

    @classmethod
    def for_config(cls, config: DeploymentConfig) -> "DeploymentRecord":
        return cls(
            config_hash=compute_config_hash(config),
            deployed_at=int(time.time()),
            version=__version__,
        )

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2))

    @classmethod
    def load(cls, path: Path) -> "DeploymentRecord":
        """Raises OSError, ValueError, KeyError or TypeError on an unreadable record."""
        data = json.loads(path.read_text())
        return cls(
            config_hash=str(data["config_hash"]),
            deployed_at=int(data["deployed_at"]),
            version=str(data["version"]),
        )


def missing_artifacts(outdata: Path) -> list[str]:
    workdir = l2_stack_dir(outdata)
    return [name for name in BOOTSTRAP_ARTIFACTS if not (workdir / name).is_file()]


def should_skip_bootstrap(config: DeploymentConfig, outdata: Path, force: bool = False) -> bool:
    """Decide whether the contract bootstrap stage can reuse prior outputs."""
    if force:
        logger.info("bootstrap_forced")
        return False

    workdir = l2_stack_dir(outdata)
    if not workdir.is_dir():
        return False

    path = record_path(outdata)
    if not path.is_file():
        logger.info("deployment_record_missing", path=str(path))
        return False

    try:
        record = DeploymentRecord.load(path)
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning("deployment_record_unreadable", path=str(path), error=str(e))
        return False

    current = compute_config_hash(config)
    if record.config_hash != current:
        logger.info(
            "deployment_config_changed",
            recorded_hash=record.config_hash[:12],
            current_hash=current[:12],
        )
        return False

    missing = missing_artifacts(outdata)
    if missing:
        logger.warning("bootstrap_artifacts_missing", missing=missing)
        return False

    return True
