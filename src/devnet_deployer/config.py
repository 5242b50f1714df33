"""Deployment configuration with pydantic-settings.

Value precedence, highest first:

    CLI arguments (init kwargs) > DEVNET_* environment > TOML config file > defaults

The resolved configuration is persisted to `<outdata>/devnet.toml` so a later
run (or `devnet health`) can reproduce the exact same deployment.

Usage:
    config = load_config("data-devnet-1234/devnet.toml", detach=True)
    save_config(config)
"""

import re
import tomllib
from pathlib import Path
from typing import Any, Literal

import tomli_w
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from .errors import ConfigurationError
from .roles import validate_counts

CONFIG_FILENAME = "devnet.toml"
ENV_PREFIX = "DEVNET_"
# lowercase so derived image repositories (devnet-<network>-<service>-local) are valid
NETWORK_NAME_PATTERN = re.compile(r"^[a-z0-9]+([._-][a-z0-9]+)*$")

# EIP-1559 parameters op-deployer bakes into the standard intent
EIP1559_DENOMINATOR = 50
EIP1559_DENOMINATOR_CANYON = 250
EIP1559_ELASTICITY = 6


class ImageRef(BaseModel):
    """A service image: a registry reference, or a local binary wrapped into one."""

    image: str
    tag: str
    binary: Path | None = Field(default=None, description="Local binary to package instead of pulling")
    binary_sha256: str | None = Field(default=None, description="Content hash of `binary`, filled on resolve")

    @property
    def reference(self) -> str:
        return f"{self.image}:{self.tag}"

    def hash_key(self) -> str:
        """What identifies this image for redeploy decisions.

        A binary is identified by its content, never by its path.
        """
        if self.binary is not None:
            return f"binary:{self.binary_sha256 or ''}"
        return self.reference


_OPLABS = "us-docker.pkg.dev/oplabs-tools-artifacts/images"


class ImagesConfig(BaseModel):
    anvil: ImageRef = ImageRef(image="ghcr.io/foundry-rs/foundry", tag="latest")
    op_deployer: ImageRef = ImageRef(image=f"{_OPLABS}/op-deployer", tag="v0.5.0-rc.2")
    op_reth: ImageRef = ImageRef(image="ghcr.io/paradigmxyz/op-reth", tag="latest")
    kona_node: ImageRef = ImageRef(image="ghcr.io/op-rs/kona/kona-node", tag="latest")
    op_batcher: ImageRef = ImageRef(image=f"{_OPLABS}/op-batcher", tag="v1.15.0")
    op_proposer: ImageRef = ImageRef(image=f"{_OPLABS}/op-proposer", tag="develop")
    op_challenger: ImageRef = ImageRef(image=f"{_OPLABS}/op-challenger", tag="develop")
    op_conductor: ImageRef = ImageRef(image=f"{_OPLABS}/op-conductor", tag="v0.9.0")
    prometheus: ImageRef = ImageRef(image="prom/prometheus", tag="latest")
    grafana: ImageRef = ImageRef(image="grafana/grafana", tag="latest")

    def items(self) -> list[tuple[str, ImageRef]]:
        return [(name, getattr(self, name)) for name in type(self).model_fields]


class DeploymentConfig(BaseSettings):
    """Every parameter of one deployment."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Identity
    network_name: str | None = Field(default=None, description="Network name; also the container name prefix")
    outdata: Path | None = Field(default=None, description="Output directory for generated artifacts")

    # Chains
    l1_chain_id: int | None = Field(default=None, description="L1 chain id; detected or random when unset")
    l2_chain_id: int | None = Field(default=None, description="L2 chain id; random when unset")
    l1_rpc_url: str | None = Field(default=None, description="L1 RPC to fork from; local L1 when unset")
    fork_block_number: int | None = Field(default=None, ge=0)
    genesis_timestamp: int | None = Field(default=None, ge=0, description="Explicit L2 genesis timestamp")
    block_time: int = Field(default=12, gt=0, description="Block time in seconds for L1 and L2 derivation")

    # Topology
    l2_node_count: int = Field(default=3, description="Total L2 nodes (sequencers + validators)")
    sequencer_count: int = Field(default=1, description="Sequencers; >1 adds op-conductor coordination")
    monitoring: bool = Field(default=True, description="Deploy Prometheus and Grafana")

    # Run behaviour
    detach: bool = Field(default=False, description="Exit once deployed, leaving containers running")
    no_cleanup: bool = Field(default=False, description="Keep containers when the run exits or fails")
    stream_logs: bool = Field(default=True, description="Forward container logs to the debug log")
    verbosity: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    log_format: Literal["json", "console"] = Field(default="console")

    # Timeouts (seconds)
    container_start_timeout: float = Field(default=120.0, gt=0)
    bootstrap_timeout: float = Field(default=900.0, gt=0)
    health_timeout: float = Field(default=5.0, gt=0)

    images: ImagesConfig = Field(default_factory=ImagesConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @field_validator("network_name")
    @classmethod
    def validate_network_name(cls, v: str | None) -> str | None:
        if v is not None and not NETWORK_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid network name: {v!r}. Use lowercase letters and digits separated by single '-', '_' or '.'"
            )
        return v

    @field_validator("verbosity")
    @classmethod
    def validate_verbosity(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @model_validator(mode="after")
    def check_topology(self) -> "DeploymentConfig":
        validate_counts(self.l2_node_count, self.sequencer_count)
        return self

    @property
    def is_resolved(self) -> bool:
        return None not in (self.network_name, self.outdata, self.l1_chain_id, self.l2_chain_id)

    @property
    def fork_mode(self) -> bool:
        return self.l1_rpc_url is not None

    @property
    def config_path(self) -> Path:
        if self.outdata is None:
            raise ConfigurationError("Output directory is not resolved")
        return self.outdata / CONFIG_FILENAME

    def require_resolved(self) -> None:
        if not self.is_resolved:
            raise ConfigurationError(
                "Configuration is not fully resolved (network_name, outdata, l1_chain_id, l2_chain_id)"
            )

    def persisted_dict(self) -> dict[str, Any]:
        # TOML has no null
        return self.model_dump(mode="json", exclude_none=True)


def _file_settings_class(path: Path) -> type[DeploymentConfig]:
    class FileDeploymentConfig(DeploymentConfig):
        model_config = SettingsConfigDict(toml_file=path)

    return FileDeploymentConfig


def build_config(config_file: str | Path | None = None, **overrides: Any) -> DeploymentConfig:
    """Build a config from CLI overrides, environment, an optional TOML file and defaults.

    Raises:
        ConfigurationError: if the file is missing or the values are invalid.
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        if config_file is None:
            return DeploymentConfig(**overrides)
        path = Path(config_file)
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        settings_cls = _file_settings_class(path)
        loaded = settings_cls(**overrides)
        # drop the file-bound subclass so the result compares and pickles as a plain config
        return DeploymentConfig.model_construct(**dict(loaded))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Config file is not valid TOML: {e}") from e


def load_config(path: str | Path, **overrides: Any) -> DeploymentConfig:
    """Load a persisted configuration; overrides and DEVNET_* env take precedence."""
    return build_config(config_file=path, **overrides)


def parse_assignments(values: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated `service=value` CLI options; service names accept `-` or `_`."""
    result: dict[str, str] = {}
    for item in values or []:
        service, sep, value = item.partition("=")
        if not sep or not service or not value:
            raise ConfigurationError(f"{option} expects SERVICE=VALUE, got '{item}'")
        result[service.strip().replace("-", "_")] = value.strip()
    return result


def override_images(
    config: DeploymentConfig,
    images: dict[str, str] | None = None,
    binaries: dict[str, str | Path] | None = None,
) -> DeploymentConfig:
    """Return `config` with per-service image references or local binaries replaced.

    Args:
        images: service -> "image:tag" (tag defaults to "latest")
        binaries: service -> path of a local executable
    """
    images = images or {}
    binaries = binaries or {}
    known = set(ImagesConfig.model_fields)
    unknown = (set(images) | set(binaries)) - known
    if unknown:
        raise ConfigurationError(f"Unknown service(s): {', '.join(sorted(unknown))}")

    updates: dict[str, ImageRef] = {}
    for service in known & (set(images) | set(binaries)):
        ref = getattr(config.images, service)
        if service in images:
            image, _, tag = images[service].rpartition(":")
            # "host:5000/repo" has no tag; the colon belongs to the registry
            if not image or "/" in tag:
                image, tag = images[service], "latest"
            ref = ref.model_copy(update={"image": image, "tag": tag, "binary": None, "binary_sha256": None})
        if service in binaries:
            ref = ref.model_copy(update={"binary": Path(binaries[service]), "binary_sha256": None})
        updates[service] = ref
    if not updates:
        return config
    return config.model_copy(update={"images": config.images.model_copy(update=updates)})


def save_config(config: DeploymentConfig, path: str | Path | None = None) -> Path:
    """Write the full configuration as TOML. Defaults to `<outdata>/devnet.toml`."""
    target = Path(path) if path is not None else config.config_path
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as f:
        tomli_w.dump(config.persisted_dict(), f)
    return target
