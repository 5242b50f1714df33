"""
Orchestrator - one deployment run from a resolved configuration.

Run lifecycle:

1. persist the configuration to `<outdata>/devnet.toml`
2. create the run network
3. execute the chain: anvil -> op-deployer -> L2 stack [-> monitoring]
4. detach, or wait for SIGINT/SIGTERM and clean up

A signal during step 3 aborts the in-flight stage; the chain cleans up
everything started so far before the error propagates.
"""

import asyncio
import signal

import docker.errors
import structlog

from .chain import CancellationToken, Deployer
from .cleanup import cleanup_run
from .config import DeploymentConfig, save_config
from .context import ExecutionContext
from .docker_ops import DockerClientWrapper
from .errors import ConfigurationError, DeploymentCancelled, RuntimeClientError
from .handles import DeploymentResult
from .image_builder import ImageResolver
from .logging_config import bind_network, clear_context
from .service import Service
from .services import AnvilService, L2StackService, MonitoringService, OpDeployerService
from .topology import Topology

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_services(config: DeploymentConfig) -> list[Service]:
    """One service per stage, in stage order."""
    services: list[Service] = [AnvilService(), OpDeployerService(), L2StackService()]
    if config.monitoring:
        services.append(MonitoringService())
    return services


class Orchestrator:
    """
    Runs one deployment.

    Usage:
        orchestrator = Orchestrator(config)
        result = await orchestrator.deploy()
    """

    def __init__(self, config: DeploymentConfig, docker_client: DockerClientWrapper | None = None):
        config.require_resolved()
        self.config = config
        self.topology = Topology.from_config(config)
        self.cancel = CancellationToken()
        # set once every unit is up; lets callers act on a running deployment
        self.deployed = asyncio.Event()
        self._docker = docker_client
        self._owns_docker = docker_client is None
        self._chain_task: asyncio.Future | None = None

    @property
    def docker(self) -> DockerClientWrapper:
        if self._docker is None:
            try:
                # a detached process must be able to exit while containers keep logging
                self._docker = DockerClientWrapper(stream_logs=self.config.stream_logs and not self.config.detach)
            except docker.errors.DockerException as e:
                raise RuntimeClientError(f"Container engine unavailable: {e}") from e
        return self._docker

    def build_chain(self) -> Deployer:
        return Deployer.from_services(build_services(self.config))

    def context(self, force: bool = False) -> ExecutionContext:
        return ExecutionContext(
            docker=self.docker,
            images=ImageResolver(self.docker, self.config.network_name),
            config=self.config,
            topology=self.topology,
            outdata=self.config.outdata,
            cancel=self.cancel,
            force_bootstrap=force,
        )

    def _on_signal(self, signame: str) -> None:
        if self.cancel.cancelled:
            # cleanup is already underway
            logger.warning("shutdown_signal_repeated", signal=signame)
            return
        logger.warning("shutdown_signal_received", signal=signame)
        self.cancel.cancel(signame)
        if self._chain_task is not None and not self._chain_task.done():
            self._chain_task.cancel()

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig.name)
            except (NotImplementedError, RuntimeError):
                # not the main thread, or no signal support on this platform
                continue
            installed.append(sig)
        return installed

    async def _execute_chain(self, chain: Deployer, ctx: ExecutionContext) -> DeploymentResult:
        self._chain_task = asyncio.ensure_future(chain.execute(ctx, keep_running=self.config.no_cleanup))
        try:
            return await self._chain_task
        except asyncio.CancelledError:
            if self.cancel.cancelled:
                raise DeploymentCancelled(f"Deployment cancelled ({self.cancel.reason})") from None
            raise
        finally:
            self._chain_task = None

    async def deploy(self, force: bool = False) -> DeploymentResult:
        """
        Deploy the network and, unless detached, keep it up until interrupted.

        Args:
            force: Redeploy contracts even if a matching deployment record exists

        Returns:
            DeploymentResult with every unit's handle

        Raises:
            DeployError: the failing unit and stage are named in the message
        """
        config = self.config
        bind_network(config.network_name)
        try:
            config.outdata.mkdir(parents=True, exist_ok=True)
            config_path = save_config(config)
        except OSError as e:
            raise ConfigurationError(f"Cannot write output directory {config.outdata}: {e}") from e
        logger.info("config_saved", path=str(config_path))

        chain = self.build_chain()
        logger.info(
            "deployment_started",
            l1_chain_id=config.l1_chain_id,
            l2_chain_id=config.l2_chain_id,
            outdata=str(config.outdata),
            units=[s.name for s in chain.services()],
        )

        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers()
        try:
            try:
                await self.docker.create_network(self.topology.docker_network)
            except docker.errors.DockerException as e:
                raise RuntimeClientError(f"Cannot create network {self.topology.docker_network}: {e}") from e

            result = await self._execute_chain(chain, self.context(force))
            logger.info("deployment_complete", units=result.names())
            self.deployed.set()

            if config.detach:
                logger.info("deployment_detached", cleanup_command=f"devnet cleanup {config.network_name}")
                return result

            logger.info("deployment_running", hint="press Ctrl+C to stop and clean up")
            await self.cancel.wait()
            if config.no_cleanup:
                logger.info("cleanup_skipped", reason="no_cleanup")
            else:
                await cleanup_run(self.docker, self.topology.docker_network)
            return result
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            if self._owns_docker and self._docker is not None and not config.detach:
                self._docker.close()
            clear_context()


async def deploy(config: DeploymentConfig, force: bool = False) -> DeploymentResult:
    return await Orchestrator(config).deploy(force=force)
