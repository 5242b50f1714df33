"""Prometheus and Grafana over every metrics endpoint of the run."""

from pathlib import Path

import structlog
import yaml

from ..context import ExecutionContext
from ..handles import L2StackHandle, MonitoringHandle
from ..service import Service
from ..stages import Stage
from .common import bind, container_handle
from .l2_node import KONA_METRICS_PORT, RETH_METRICS_PORT
from .op_stack import BATCHER_METRICS_PORT, CHALLENGER_METRICS_PORT, PROPOSER_METRICS_PORT

logger = structlog.get_logger()

PROMETHEUS_PORT = 9090
GRAFANA_PORT = 3000
SCRAPE_INTERVAL = "5s"

PROMETHEUS_CONFIG_DIR = "/etc/prometheus"
GRAFANA_PROVISIONING_DIR = "/etc/grafana/provisioning"


def scrape_targets(stack: L2StackHandle) -> dict[str, list[str]]:
    """Job name -> `host:port` targets, addressed by container name."""
    return {
        "op-reth": [f"{n.execution.container_name}:{RETH_METRICS_PORT}" for n in stack.nodes],
        "kona-node": [f"{n.consensus.container_name}:{KONA_METRICS_PORT}" for n in stack.nodes],
        "op-batcher": [f"{stack.batcher.container_name}:{BATCHER_METRICS_PORT}"],
        "op-proposer": [f"{stack.proposer.container_name}:{PROPOSER_METRICS_PORT}"],
        "op-challenger": [f"{stack.challenger.container_name}:{CHALLENGER_METRICS_PORT}"],
    }


def prometheus_config(targets: dict[str, list[str]]) -> dict:
    return {
        "global": {"scrape_interval": SCRAPE_INTERVAL, "evaluation_interval": SCRAPE_INTERVAL},
        "scrape_configs": [
            {"job_name": job, "static_configs": [{"targets": hosts}]} for job, hosts in targets.items()
        ],
    }


def grafana_datasource(prometheus_name: str) -> dict:
    return {
        "apiVersion": 1,
        "datasources": [
            {
                "name": "Prometheus",
                "type": "prometheus",
                "access": "proxy",
                "url": f"http://{prometheus_name}:{PROMETHEUS_PORT}",
                "isDefault": True,
            }
        ],
    }


def write_yaml(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return path


class MonitoringService(Service):
    stage = Stage.OBSERVABILITY
    output = "monitoring"

    def __init__(self, name: str = "monitoring"):
        super().__init__(name)

    async def deploy(self, ctx: ExecutionContext) -> MonitoringHandle:
        stack: L2StackHandle = ctx.require("l2_stack")
        topology = ctx.topology
        images = ctx.config.images
        workdir = ctx.outdata / "monitoring"

        targets = scrape_targets(stack)
        write_yaml(workdir / "prometheus" / "prometheus.yml", prometheus_config(targets))
        write_yaml(
            workdir / "grafana" / "datasources" / "prometheus.yml",
            grafana_datasource(topology.prometheus),
        )

        prometheus_image = await ctx.images.resolve("prometheus", images.prometheus)
        prometheus = await ctx.docker.start_service(
            name=topology.prometheus,
            image=prometheus_image,
            network=ctx.network,
            command=[
                f"--config.file={PROMETHEUS_CONFIG_DIR}/prometheus.yml",
                "--storage.tsdb.path=/prometheus",
            ],
            ports=[PROMETHEUS_PORT],
            volumes=bind(workdir / "prometheus", PROMETHEUS_CONFIG_DIR, "ro"),
            start_timeout=self.start_timeout(ctx),
        )

        grafana_image = await ctx.images.resolve("grafana", images.grafana)
        grafana = await ctx.docker.start_service(
            name=topology.grafana,
            image=grafana_image,
            network=ctx.network,
            ports=[GRAFANA_PORT],
            volumes=bind(workdir / "grafana", GRAFANA_PROVISIONING_DIR, "ro"),
            environment={
                "GF_AUTH_ANONYMOUS_ENABLED": "true",
                "GF_AUTH_ANONYMOUS_ORG_ROLE": "Admin",
            },
            start_timeout=self.start_timeout(ctx),
        )

        handle = MonitoringHandle(
            prometheus=container_handle(prometheus, PROMETHEUS_PORT),
            grafana=container_handle(grafana, GRAFANA_PORT),
        )
        logger.info(
            "monitoring_started",
            prometheus=handle.prometheus.host_url,
            grafana=handle.grafana.host_url,
            jobs=list(targets),
        )
        return handle
