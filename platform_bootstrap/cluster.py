# /*
# Copyright 2026 The Platform Bootstrap Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Cluster lifecycle (kind / minikube), node resource limits, and persistent storage."""

from __future__ import annotations

import json
from pathlib import Path

import docker
import sh
import yaml
from rich.panel import Panel
from rich.table import Table

from platform_bootstrap import console, logger
from platform_bootstrap.allocation import (
    AllocationSummary,
    ClusterType,
    NodeIdentity,
    NodeRoleClassifier,
    ResourceAllocationPolicy,
    classify_cluster_type,
    format_memory_gib,
    label_strategy,
    load_allocation_table,
    name_pattern_strategy,
)
from platform_bootstrap.config import ClusterConfig, RunContext
from platform_bootstrap.constants import (
    APPLY_INITIAL_DELAY_SECONDS,
    APPLY_MAX_RETRIES,
    CLUSTER_CREATE_INITIAL_DELAY_SECONDS,
    DEFAULT_RESOURCE_LIMITS_FILE,
    DOCKER_CPU_PERIOD,
    JSONPATH_NODE_TYPE,
    KIND_CLUSTER_LABEL,
    MINIO_DATA_PATH,
    POSTGRES_DATA_PATH,
    PROVIDER_KIND,
    PROVIDER_MINIKUBE,
    REL_STORAGE_MANIFESTS,
)
from platform_bootstrap.errors import ExternalSystemError
from platform_bootstrap.utils import apply_path, error_text, kubectl_output, run_kubectl

# (base path, sub-directories, owner, mode) inside the minikube VM
STORAGE_LAYOUT = (
    (MINIO_DATA_PATH, ("data-0", "data-1"), "1000:1000", "755"),
    (POSTGRES_DATA_PATH, ("mlflow-1", "mlflow-2", "demo-app-1", "demo-app-2"), "26:26", "700"),
)

_READY_JSONPATH = '{range .items[*]}{.status.conditions[?(@.type=="Ready")].status}{"\\n"}{end}'


# ============================================================================
# Cluster identity
# ============================================================================

def resolve_cluster_name(cluster_cfg: ClusterConfig) -> str:
    """Cluster name: the ``name`` field of the kind descriptor, else the configured name."""
    if cluster_cfg.provider == PROVIDER_MINIKUBE:
        return cluster_cfg.cluster_name
    path = cluster_cfg.topology_path
    if path.is_file():
        with open(path) as f:
            descriptor = yaml.safe_load(f) or {}
        if isinstance(descriptor, dict) and descriptor.get("name"):
            return str(descriptor["name"])
    return cluster_cfg.cluster_name


def cluster_exists(cluster_cfg: ClusterConfig) -> bool:
    name = resolve_cluster_name(cluster_cfg)
    try:
        if cluster_cfg.provider == PROVIDER_KIND:
            return name in str(sh.kind("get", "clusters")).split()
        profiles = json.loads(str(sh.minikube("profile", "list", "-o", "json")))
    except sh.ErrorReturnCode:
        return False
    return any(p.get("Name") == name for p in profiles.get("valid", []) + profiles.get("invalid", []))


def current_context() -> str:
    return kubectl_output(["config", "current-context"])


def check_cluster_connectivity(ctx: RunContext) -> None:
    """Verify kubectl reaches a cluster and record the context.

    Raises:
        ExternalSystemError: If there is no context or the API server is unreachable.
    """
    context = current_context()
    if not context:
        raise ExternalSystemError("No kubectl context found. Please set up kubectl context first.")
    ok, _, stderr = run_kubectl(["cluster-info"])
    if not ok:
        raise ExternalSystemError(f"Cannot connect to cluster with context '{context}': {stderr.strip()}")
    ctx.state.kubectl_context = context
    console.print(f"[green]\u2705 Connected to cluster context: {context}[/green]")


# ============================================================================
# Cluster operations
# ============================================================================

def delete_cluster(cluster_cfg: ClusterConfig) -> None:
    """Delete the cluster; a missing cluster is not an error."""
    name = resolve_cluster_name(cluster_cfg)
    console.print(f"[yellow]\u2139\ufe0f  Deleting {cluster_cfg.provider} cluster '{name}'...[/yellow]")
    if not cluster_exists(cluster_cfg):
        console.print(f"[yellow]\u26a0\ufe0f  Cluster '{name}' not found or already deleted[/yellow]")
        return
    try:
        if cluster_cfg.provider == PROVIDER_KIND:
            sh.kind("delete", "cluster", "--name", name)
        else:
            sh.minikube("delete", "-p", name)
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"Failed to delete cluster '{name}': {error_text(err)}") from err
    console.print(f"[green]\u2705 Cluster '{name}' deleted[/green]")


def _create_command(cluster_cfg: ClusterConfig, name: str) -> tuple[str, list[str]]:
    if cluster_cfg.provider == PROVIDER_KIND:
        return "nvkind", ["cluster", "create", f"--config-template={cluster_cfg.topology_path}"]
    return "minikube", [
        "start", "-p", name,
        "--driver", "docker",
        "--container-runtime", "docker",
        "--cpus", str(cluster_cfg.minikube_cpus),
        "--memory", cluster_cfg.minikube_memory,
        "--disk-size", cluster_cfg.minikube_disk,
        "--gpus", "all",
    ]


def create_cluster(ctx: RunContext) -> None:
    """Create the cluster with retry, reusing an existing one unless recreation was requested.

    Raises:
        RetryExhaustedError: If the cluster cannot be created after all retries.
    """
    cluster_cfg = ctx.cluster_cfg
    name = resolve_cluster_name(cluster_cfg)
    console.print(Panel.fit(f"Creating {cluster_cfg.provider} cluster '{name}'", style="bold blue"))

    if cluster_exists(cluster_cfg):
        if not ctx.options.recreate_cluster:
            console.print(f"[yellow]\u2139\ufe0f  Cluster '{name}' already exists; reusing it[/yellow]")
            return
        delete_cluster(cluster_cfg)

    program, args = _create_command(cluster_cfg, name)

    def _attempt() -> None:
        # a failed attempt can leave a half-created cluster behind
        if cluster_exists(cluster_cfg):
            delete_cluster(cluster_cfg)
        try:
            sh.Command(program)(*args, _out=lambda line: logger.info(line.rstrip()))
        except sh.ErrorReturnCode as err:
            raise ExternalSystemError(f"{program} failed: {error_text(err)}") from err

    ctx.retry.run(
        _attempt,
        max_attempts=cluster_cfg.max_retries,
        initial_delay=CLUSTER_CREATE_INITIAL_DELAY_SECONDS,
        description=f"create cluster '{name}'",
    ).unwrap()
    console.print("[green]\u2705 Cluster created successfully[/green]")


def all_nodes_ready() -> bool:
    statuses = kubectl_output(["get", "nodes", "-o", f"jsonpath={_READY_JSONPATH}"]).split()
    return bool(statuses) and all(status == "True" for status in statuses)


def wait_for_nodes(ctx: RunContext) -> None:
    """Wait for all nodes to be ready."""
    console.print("[yellow]\u2139\ufe0f  Waiting for all nodes to be ready...[/yellow]")
    ctx.waiter.wait(
        all_nodes_ready,
        timeout=ctx.cluster_cfg.nodes_ready_timeout,
        description="all nodes Ready",
    ).raise_for_timeout()
    console.print("[green]\u2705 All nodes are ready[/green]")


# ============================================================================
# Node resource limits
# ============================================================================

def read_node_type_label(node_name: str) -> str | None:
    return kubectl_output(["get", "node", node_name, "-o", f"jsonpath={JSONPATH_NODE_TYPE}"]) or None


def node_containers(client: docker.DockerClient, cluster_name: str) -> list:
    """Running node containers of a kind cluster, selected by kind's cluster label."""
    containers = client.containers.list(filters={"label": f"{KIND_CLUSTER_LABEL}={cluster_name}"})
    return sorted(containers, key=lambda c: c.name)


def node_identity(container) -> NodeIdentity:
    """Map a node container to its Kubernetes node name (its hostname)."""
    try:
        result = container.exec_run(["hostname"])
    except docker.errors.APIError as err:
        logger.debug("hostname lookup in %s failed: %s", container.name, err)
        return NodeIdentity(container.name)
    hostname = result.output.decode().strip() if result.exit_code == 0 else ""
    return NodeIdentity(container.name, hostname or None)


def host_capacity(client: docker.DockerClient) -> tuple[float, float]:
    """Host CPUs and memory in GiB as reported by ``docker info``."""
    info = client.info()
    return float(info.get("NCPU", 0)), info.get("MemTotal", 0) / 1024**3


def render_allocation_table(summary: AllocationSummary) -> Table:
    table = Table(title=f"Resource allocation ({summary.cluster_type.value})")
    table.add_column("Node")
    table.add_column("Role")
    table.add_column("CPU", justify="right")
    table.add_column("Memory", justify="right")
    for allocation in summary.allocations:
        table.add_row(
            allocation.node.display_name,
            allocation.role.value,
            f"{allocation.limits.cpu:g}",
            allocation.limits.memory,
        )
    table.add_section()
    table.add_row(
        "Total",
        f"host: {summary.host_cpus:g} vCPUs, {summary.host_memory_gib:.0f}g",
        f"{summary.total_cpu:g} ({summary.cpu_percent:.0f}%)",
        f"{format_memory_gib(summary.total_memory_gib)} ({summary.memory_percent:.0f}%)",
    )
    return table


def apply_resource_limits(ctx: RunContext, client: docker.DockerClient | None = None) -> AllocationSummary:
    """Classify each node container and push CPU/memory limits with swap disabled.

    Args:
        ctx: Run context.
        client: Docker client, or None to connect from the environment.

    Returns:
        The allocation summary that was applied.

    Raises:
        ExternalSystemError: If Docker rejects an update.
    """
    console.print(Panel.fit("Applying resource limits to cluster nodes", style="bold blue"))
    cluster_cfg = ctx.cluster_cfg
    cluster_name = resolve_cluster_name(cluster_cfg)
    cluster_type = classify_cluster_type(cluster_cfg.topology_descriptor)
    ctx.state.cluster_type = cluster_type.value

    table = load_allocation_table(cluster_cfg.resource_limits_file, DEFAULT_RESOURCE_LIMITS_FILE)
    policy = ResourceAllocationPolicy(table)
    classifier = NodeRoleClassifier([label_strategy(read_node_type_label), name_pattern_strategy])

    owns_client = client is None
    client = client or docker.from_env()
    try:
        containers = {c.name: c for c in node_containers(client, cluster_name)}
        if not containers:
            raise ExternalSystemError(f"No node containers found for cluster '{cluster_name}'")
        allocations = policy.plan((node_identity(c) for c in containers.values()), cluster_type, classifier)
        host_cpus, host_memory = host_capacity(client)
        summary = AllocationSummary(cluster_type, host_cpus, host_memory, tuple(allocations))
        console.print(render_allocation_table(summary))

        for allocation in allocations:
            limits = allocation.limits
            container = containers[allocation.node.display_name]
            console.print(
                f"[yellow]   Limiting {container.name} ({allocation.role.value}): "
                f"{limits.cpu:g} CPUs, {limits.memory} memory[/yellow]"
            )
            try:
                container.update(
                    cpu_period=DOCKER_CPU_PERIOD,
                    cpu_quota=int(limits.cpu * DOCKER_CPU_PERIOD),
                    mem_limit=limits.memory,
                    memswap_limit=limits.memory,
                )
            except docker.errors.APIError as err:
                raise ExternalSystemError(f"docker update {container.name} failed: {err}") from err
    finally:
        if owns_client:
            client.close()

    console.print(f"[green]\u2705 Applied resource limits to {len(allocations)} nodes[/green]")
    return summary


# ============================================================================
# Persistent storage (minikube)
# ============================================================================

def storage_setup_script() -> str:
    """Shell snippet run inside the minikube VM to create the host-path volumes."""
    lines = []
    for base, subdirs, owner, mode in STORAGE_LAYOUT:
        lines.append("sudo mkdir -p " + " ".join(f"{base}/{d}" for d in subdirs))
        lines.append(f"sudo chown -R {owner} {base}")
        lines.append(f"sudo chmod -R {mode} {base}")
    return " && ".join(lines)


def prepare_persistent_storage(ctx: RunContext) -> None:
    """Create data directories inside the minikube VM and apply the storage manifests."""
    console.print(Panel.fit("Creating persistent storage directories", style="bold blue"))
    name = resolve_cluster_name(ctx.cluster_cfg)
    try:
        sh.minikube("ssh", "-p", name, "--", storage_setup_script())
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"Creating storage directories failed: {error_text(err)}") from err

    manifests = Path(ctx.bootstrap_cfg.repo_root) / REL_STORAGE_MANIFESTS
    ctx.retry.run(
        lambda: apply_path(manifests, kustomize=True),
        max_attempts=APPLY_MAX_RETRIES,
        initial_delay=APPLY_INITIAL_DELAY_SECONDS,
        description="apply storage manifests",
    ).unwrap()
    console.print("[green]\u2705 Persistent storage configured[/green]")


def cluster_type_for(cluster_cfg: ClusterConfig) -> ClusterType:
    return classify_cluster_type(cluster_cfg.topology_descriptor)
