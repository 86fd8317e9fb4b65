#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "boto3>=1.26.0,<2",
#     "botocore>=1.29.0,<2",
# ]
# ///
"""
Amazon Elasticsearch Service Metrics Plugin

Fetch the latest CloudWatch datapoint of each AWS/ES domain metric and
print it in the format read by mackerel-agent.
"""

import argparse
import json
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from botocore.utils import InstanceMetadataRegionFetcher


logger = logging.getLogger(__name__)

NAMESPACE = "AWS/ES"
PERIOD_SECONDS = 60
WINDOW_SECONDS = 180

DEFAULT_KEY_PREFIX = "es"
DEFAULT_LABEL_PREFIX = "AWS ES"

META_ENV = "MACKEREL_AGENT_PLUGIN_META"
META_HEADER = "# mackerel-agent-plugin"

# CloudWatch reports these in megabytes
MEGABYTE_METRICS = frozenset({"ClusterUsedSpace", "MasterFreeStorageSpace", "FreeStorageSpace"})
BYTES_PER_MEGABYTE = 1024 * 1024


class Statistic(Enum):
    """CloudWatch statistic, valued by its name in the API and in datapoints."""

    AVERAGE = "Average"
    SUM = "Sum"
    MAXIMUM = "Maximum"
    MINIMUM = "Minimum"


@dataclass(frozen=True)
class MetricSpec:
    name: str
    statistic: Statistic


METRICS: tuple[MetricSpec, ...] = (
    MetricSpec("ClusterStatus.green", Statistic.MINIMUM),
    MetricSpec("ClusterStatus.yellow", Statistic.MAXIMUM),
    MetricSpec("ClusterStatus.red", Statistic.MAXIMUM),
    MetricSpec("Nodes", Statistic.AVERAGE),
    MetricSpec("SearchableDocuments", Statistic.AVERAGE),
    MetricSpec("DeletedDocuments", Statistic.AVERAGE),
    MetricSpec("CPUUtilization", Statistic.MAXIMUM),
    MetricSpec("FreeStorageSpace", Statistic.MINIMUM),
    MetricSpec("ClusterUsedSpace", Statistic.MINIMUM),
    MetricSpec("ClusterIndexWritesBlocked", Statistic.MAXIMUM),
    MetricSpec("JVMMemoryPressure", Statistic.MAXIMUM),
    MetricSpec("AutomatedSnapshotFailure", Statistic.MAXIMUM),
    MetricSpec("KibanaHealthyNodes", Statistic.MINIMUM),
    MetricSpec("MasterCPUUtilization", Statistic.MAXIMUM),
    MetricSpec("MasterFreeStorageSpace", Statistic.SUM),
    MetricSpec("MasterJVMMemoryPressure", Statistic.MAXIMUM),
    MetricSpec("MasterReachableFromNode", Statistic.MINIMUM),
    MetricSpec("ReadLatency", Statistic.AVERAGE),
    MetricSpec("WriteLatency", Statistic.AVERAGE),
    MetricSpec("ReadThroughput", Statistic.AVERAGE),
    MetricSpec("WriteThroughput", Statistic.AVERAGE),
    MetricSpec("DiskQueueDepth", Statistic.AVERAGE),
    MetricSpec("ReadIOPS", Statistic.AVERAGE),
    MetricSpec("WriteIOPS", Statistic.AVERAGE),
)


@dataclass(frozen=True)
class GraphMetric:
    name: str
    label: str


@dataclass(frozen=True)
class GraphSpec:
    label: str
    unit: str
    metrics: tuple[GraphMetric, ...]


def _single(name: str) -> tuple[tuple[str, str], ...]:
    return ((name, name),)


# (graph key, title, unit, ((metric name, metric label), ...))
GRAPHS: tuple[tuple[str, str, str, tuple[tuple[str, str], ...]], ...] = (
    ("ClusterStatus", "ClusterStatus", "integer", (
        ("ClusterStatus.green", "green"),
        ("ClusterStatus.yellow", "yellow"),
        ("ClusterStatus.red", "red"),
    )),
    ("Nodes", "Nodes", "integer", _single("Nodes")),
    ("SearchableDocuments", "SearchableDocuments", "integer", _single("SearchableDocuments")),
    ("DeletedDocuments", "DeletedDocuments", "integer", _single("DeletedDocuments")),
    ("CPUUtilization", "CPU Utilization", "percentage", _single("CPUUtilization")),
    ("FreeStorageSpace", "Free Storage Space", "bytes", _single("FreeStorageSpace")),
    ("ClusterUsedSpace", "Cluster Used Space", "bytes", _single("ClusterUsedSpace")),
    ("ClusterIndexWritesBlocked", "ClusterIndexWritesBlocked", "integer", _single("ClusterIndexWritesBlocked")),
    ("JVMMemoryPressure", "JVMMemoryPressure", "percentage", _single("JVMMemoryPressure")),
    ("AutomatedSnapshotFailure", "AutomatedSnapshotFailure", "integer", _single("AutomatedSnapshotFailure")),
    ("KibanaHealthyNodes", "KibanaHealthyNodes", "integer", _single("KibanaHealthyNodes")),
    ("MasterCPUUtilization", "MasterCPUUtilization", "percentage", _single("MasterCPUUtilization")),
    ("MasterFreeStorageSpace", "MasterFreeStorageSpace", "bytes", _single("MasterFreeStorageSpace")),
    ("MasterJVMMemoryPressure", "MasterJVMMemoryPressure", "percentage", _single("MasterJVMMemoryPressure")),
    ("MasterReachableFromNode", "MasterReachableFromNode", "percentage", _single("MasterReachableFromNode")),
    ("Latency", "Latency", "float", (
        ("ReadLatency", "ReadLatency"),
        ("WriteLatency", "WriteLatency"),
    )),
    ("Throughput", "Throughput", "bytes/sec", (
        ("ReadThroughput", "ReadThroughput"),
        ("WriteThroughput", "WriteThroughput"),
    )),
    ("DiskQueueDepth", "DiskQueueDepth", "integer", _single("DiskQueueDepth")),
    ("IOPS", "IOPS", "iops", (
        ("ReadIOPS", "ReadIOPS"),
        ("WriteIOPS", "WriteIOPS"),
    )),
)


class ConnectionSetupError(RuntimeError):
    """The CloudWatch session or client could not be created."""


def resolve_region(region: Optional[str], session: boto3.session.Session) -> Optional[str]:
    """Pick the explicit region, then the session default, then the EC2 instance region."""
    if region:
        return region
    if session.region_name:
        return session.region_name
    return InstanceMetadataRegionFetcher().retrieve_region()


def prepare(
    region: Optional[str] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
) -> BaseClient:
    """Build a CloudWatch client.

    Static credentials are used only when both the key id and the secret are
    given; otherwise boto3 resolves credentials from the environment, shared
    config files or the instance role.
    """
    session_params = {}
    if access_key_id and secret_access_key:
        session_params["aws_access_key_id"] = access_key_id
        session_params["aws_secret_access_key"] = secret_access_key

    try:
        session = boto3.session.Session(**session_params)
        return session.client("cloudwatch", region_name=resolve_region(region, session))
    except BotoCoreError as e:
        raise ConnectionSetupError(str(e)) from e


def select_latest_datapoint(datapoints: list[dict]) -> Optional[dict]:
    """Return the datapoint with the newest timestamp, the last one seen on a tie."""
    latest = None
    for datapoint in datapoints:
        if latest is None or datapoint["Timestamp"] >= latest["Timestamp"]:
            latest = datapoint
    return latest


def extract_value(datapoint: dict, statistic: Statistic) -> float:
    """Read the field of ``datapoint`` holding ``statistic``.

    Raises KeyError when the backend did not return the requested statistic.
    """
    return float(datapoint[statistic.value])


def convert_units(name: str, value: float) -> float:
    """Scale the megabyte-valued storage metrics to bytes."""
    if name in MEGABYTE_METRICS:
        return value * BYTES_PER_MEGABYTE
    return value


def build_graph_definitions(label_prefix: str = "") -> dict[str, GraphSpec]:
    """Build the graph definitions with every label prefixed by ``label_prefix``."""
    label_prefix = label_prefix or DEFAULT_LABEL_PREFIX
    return {
        key: GraphSpec(
            label=f"{label_prefix} {title}",
            unit=unit,
            metrics=tuple(GraphMetric(name=name, label=label) for name, label in members),
        )
        for key, title, unit, members in GRAPHS
    }


class ElasticsearchPlugin:
    """Collects the AWS/ES metrics of one domain from CloudWatch."""

    def __init__(
        self,
        cloudwatch: Optional[BaseClient],
        domain: str,
        client_id: str,
        key_prefix: str = "",
        label_prefix: str = "",
        metrics: tuple[MetricSpec, ...] = METRICS,
        max_workers: int = 1,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.cloudwatch = cloudwatch
        self.domain = domain
        self.client_id = client_id
        self.key_prefix = key_prefix
        self.label_prefix = label_prefix
        self.metrics = metrics
        self.max_workers = max_workers
        self.clock = clock

    def metric_key_prefix(self) -> str:
        return self.key_prefix or DEFAULT_KEY_PREFIX

    def metric_label_prefix(self) -> str:
        return self.label_prefix or DEFAULT_LABEL_PREFIX

    def get_last_point(self, metric: MetricSpec) -> Optional[dict]:
        """Query the trailing window of ``metric`` and return its newest datapoint."""
        end_time = self.clock()
        start_time = end_time - timedelta(seconds=WINDOW_SECONDS)
        logger.debug("Querying %s (%s) from %s to %s", metric.name, metric.statistic.value,
                     start_time.isoformat(), end_time.isoformat())

        response = self.cloudwatch.get_metric_statistics(
            Namespace=NAMESPACE,
            MetricName=metric.name,
            Dimensions=[
                {"Name": "DomainName", "Value": self.domain},
                {"Name": "ClientId", "Value": self.client_id},
            ],
            StartTime=start_time,
            EndTime=end_time,
            Period=PERIOD_SECONDS,
            Statistics=[metric.statistic.value],
        )
        return select_latest_datapoint(response.get("Datapoints", []))

    def _fetch_one(self, metric: MetricSpec) -> Optional[float]:
        """Return the converted latest value of ``metric``, or None when there is none."""
        try:
            datapoint = self.get_last_point(metric)
        except (BotoCoreError, ClientError) as e:
            logger.warning("%s: %s", metric.name, e)
            return None
        if datapoint is None:
            return None
        return convert_units(metric.name, extract_value(datapoint, metric.statistic))

    def fetch_metrics(self) -> dict[str, float]:
        """Return the latest value of every metric that could be fetched."""
        if self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                values = list(executor.map(self._fetch_one, self.metrics))
        else:
            values = [self._fetch_one(metric) for metric in self.metrics]

        stat = {}
        for metric, value in zip(self.metrics, values):
            if value is not None:
                stat[metric.name] = value
        return stat

    def graph_definitions(self) -> dict[str, GraphSpec]:
        return build_graph_definitions(self.metric_label_prefix())


def output_values(plugin: ElasticsearchPlugin, stat: dict[str, float], now: Optional[int] = None) -> None:
    """Print one tab-separated line per collected metric that belongs to a graph."""
    now = int(time.time()) if now is None else now
    prefix = plugin.metric_key_prefix()
    for key, graph in plugin.graph_definitions().items():
        for metric in graph.metrics:
            if metric.name not in stat:
                continue
            print(f"{prefix}.{key}.{metric.name}\t{stat[metric.name]}\t{now}")


def output_meta(plugin: ElasticsearchPlugin) -> None:
    """Print the graph definitions in the agent's plugin meta format."""
    prefix = plugin.metric_key_prefix()
    graphs = {}
    for key, graph in plugin.graph_definitions().items():
        graphs[f"{prefix}.{key}"] = {
            "label": graph.label,
            "unit": graph.unit,
            "metrics": [
                {"name": metric.name, "label": metric.label, "stacked": False}
                for metric in graph.metrics
            ],
        }

    print(META_HEADER)
    print(json.dumps({"graphs": graphs}))


def positive_int(value: str) -> int:
    """Argparse type for counts of one or more."""
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fetch Amazon Elasticsearch Service metrics from CloudWatch for mackerel-agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print the latest values of a domain
  %(prog)s --domain my-domain --client-id 123456789012 --region us-east-1

  # Print the graph definitions read by the agent
  MACKEREL_AGENT_PLUGIN_META=1 %(prog)s --domain my-domain --client-id 123456789012
        """,
    )

    aws_group = parser.add_argument_group("aws options")
    aws_group.add_argument("--region", default="", help="AWS Region")
    aws_group.add_argument("--access-key-id", default="", help="AWS Access Key ID")
    aws_group.add_argument("--secret-access-key", default="", help="AWS Secret Access Key")
    aws_group.add_argument("--client-id", default="", help="AWS Client ID")
    aws_group.add_argument("--domain", default="", help="ES domain name")

    plugin_group = parser.add_argument_group("plugin options")
    plugin_group.add_argument("--tempfile", default="", help="Temp file name")
    plugin_group.add_argument("--metric-key-prefix", default=DEFAULT_KEY_PREFIX, help="Metric key prefix")
    plugin_group.add_argument("--metric-label-prefix", default=DEFAULT_LABEL_PREFIX, help="Metric label prefix")
    plugin_group.add_argument(
        "--workers", type=positive_int, default=1,
        help="Number of concurrent CloudWatch queries. Default: 1",
    )
    plugin_group.add_argument("-v", "--verbose", action="store_true", help="Log each query")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        stream=sys.stderr,
    )
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    if os.environ.get(META_ENV):
        plugin = ElasticsearchPlugin(
            None, args.domain, args.client_id,
            key_prefix=args.metric_key_prefix,
            label_prefix=args.metric_label_prefix,
        )
        output_meta(plugin)
        return

    try:
        cloudwatch = prepare(args.region, args.access_key_id, args.secret_access_key)
    except ConnectionSetupError as e:
        print(f"Error preparing CloudWatch client: {e}", file=sys.stderr)
        sys.exit(1)

    plugin = ElasticsearchPlugin(
        cloudwatch, args.domain, args.client_id,
        key_prefix=args.metric_key_prefix,
        label_prefix=args.metric_label_prefix,
        max_workers=args.workers,
    )
    output_values(plugin, plugin.fetch_metrics())


if __name__ == "__main__":
    main()
