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

"""Configuration classes, run options, and config resolution/display."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import typer
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.panel import Panel

from platform_bootstrap import console, logger
from platform_bootstrap.constants import (
    ARGOCD_READY_TIMEOUT_SECONDS,
    DEFAULT_CLUSTER_CREATE_MAX_RETRIES,
    DEFAULT_CLUSTER_NAME,
    DEFAULT_MINIKUBE_CPUS,
    DEFAULT_MINIKUBE_DISK,
    DEFAULT_MINIKUBE_MEMORY,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SECRETS_FILE,
    DEFAULT_SSH_KEY_FILE,
    DEFAULT_STATE_DIR,
    DEFAULT_TOPOLOGY,
    DEFAULT_VAULT_CONTAINER,
    DEFAULT_VAULT_HOST_IP,
    DEFAULT_VAULT_IMAGE,
    DEFAULT_VAULT_PORT,
    DEFAULT_VAULT_ROOT_TOKEN,
    GATEWAY_IP_TIMEOUT_SECONDS,
    GATEWAY_SERVICE,
    NODES_READY_TIMEOUT_SECONDS,
    NS_ISTIO_INGRESS,
    PROVIDER_KIND,
    PROVIDER_MINIKUBE,
)
from platform_bootstrap.retrying import RetryExecutor
from platform_bootstrap.supervisor import ProcessSupervisor
from platform_bootstrap.waiting import ConditionWaiter


# ============================================================================
# Configuration classes
# ============================================================================

class ClusterConfig(BaseSettings):
    """Cluster provider configuration, auto-loaded from BOOTSTRAP_* env vars.

    Attributes:
        provider: ``kind`` (topology descriptor) or ``minikube`` (single VM).
        cluster_name: Cluster name used when the descriptor carries none.
        topology: kind topology descriptor, absolute or relative to ``kind_config_dir``.
        kind_config_dir: Directory holding the kind topology descriptors.
        resource_limits_file: Allocation table override, or None for the packaged one.
        minikube_cpus: CPUs for the minikube VM.
        minikube_memory: Memory for the minikube VM.
        minikube_disk: Disk size for the minikube VM.
        nodes_ready_timeout: Seconds to wait for every node to report Ready.
        max_retries: Maximum cluster creation attempts.
    """

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", extra="ignore", frozen=True)

    provider: str = Field(default=PROVIDER_KIND, pattern=f"^({PROVIDER_KIND}|{PROVIDER_MINIKUBE})$")
    cluster_name: str = DEFAULT_CLUSTER_NAME
    topology: str = DEFAULT_TOPOLOGY
    kind_config_dir: Path = Path("scripts/bootstrap/local-development/kind")
    resource_limits_file: Path | None = None
    minikube_cpus: int = Field(default=DEFAULT_MINIKUBE_CPUS, ge=1)
    minikube_memory: str = Field(default=DEFAULT_MINIKUBE_MEMORY, pattern=r"^\d+[mMgG]?$")
    minikube_disk: str = Field(default=DEFAULT_MINIKUBE_DISK, pattern=r"^\d+[mMgG]?$")
    nodes_ready_timeout: int = Field(default=NODES_READY_TIMEOUT_SECONDS, ge=0)
    max_retries: int = Field(default=DEFAULT_CLUSTER_CREATE_MAX_RETRIES, ge=1, le=10)

    @property
    def topology_path(self) -> Path:
        path = Path(self.topology)
        return path if path.is_absolute() or path.exists() else self.kind_config_dir / path

    @property
    def topology_descriptor(self) -> str:
        """Name the allocation policy classifies: the descriptor file, or the provider for minikube."""
        return PROVIDER_MINIKUBE if self.provider == PROVIDER_MINIKUBE else Path(self.topology).name


class VaultConfig(BaseSettings):
    """Dev-mode Vault container configuration, auto-loaded from VAULT_* env vars.

    Attributes:
        container_name: Docker container name.
        image: Vault image.
        host_ip: Host address the API port is published on.
        host_port: Host port for the Vault API.
        internal_port: Listen port inside the container.
        root_token: Dev-mode root token.
        secrets_file: dotenv file with the platform secret variables.
        ssh_key_file: GitOps repository SSH private key.
    """

    model_config = SettingsConfigDict(env_prefix="VAULT_", extra="ignore", frozen=True)

    container_name: str = DEFAULT_VAULT_CONTAINER
    image: str = DEFAULT_VAULT_IMAGE
    host_ip: str = DEFAULT_VAULT_HOST_IP
    host_port: int = Field(default=DEFAULT_VAULT_PORT, ge=1, le=65535)
    internal_port: int = Field(default=DEFAULT_VAULT_PORT, ge=1, le=65535)
    root_token: str = Field(default=DEFAULT_VAULT_ROOT_TOKEN, min_length=1)
    secrets_file: Path = DEFAULT_SECRETS_FILE
    ssh_key_file: Path = DEFAULT_SSH_KEY_FILE

    @property
    def external_addr(self) -> str:
        return f"http://{self.host_ip}:{self.host_port}"


class BootstrapConfig(BaseSettings):
    """GitOps bootstrap and networking configuration, auto-loaded from BOOTSTRAP_* env vars.

    Attributes:
        repo_root: Platform repository checkout holding the manifests.
        output_dir: Directory for the JSON run summaries.
        state_dir: Directory for supervisor PID files and process logs.
        gitops_repo_url: Repository registered with ArgoCD.
        argocd_ready_timeout: Seconds to wait for the ArgoCD server deployment.
        gateway_ip_timeout: Seconds to wait for the ingress gateway IP.
        gateway_service: Ingress gateway LoadBalancer service.
        gateway_namespace: Namespace of the ingress gateway service.
        update_hosts: Whether to manage the exposed services block in /etc/hosts.
    """

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", extra="ignore", frozen=True)

    repo_root: Path = Field(default_factory=Path.cwd)
    output_dir: Path = DEFAULT_OUTPUT_DIR
    state_dir: Path = DEFAULT_STATE_DIR
    gitops_repo_url: str = "git@github.com:opencloudhub/gitops.git"
    argocd_ready_timeout: int = Field(default=ARGOCD_READY_TIMEOUT_SECONDS, ge=0)
    gateway_ip_timeout: int = Field(default=GATEWAY_IP_TIMEOUT_SECONDS, ge=0)
    gateway_service: str = GATEWAY_SERVICE
    gateway_namespace: str = NS_ISTIO_INGRESS
    update_hosts: bool = True


# ============================================================================
# Run options and context
# ============================================================================

@dataclass(frozen=True)
class RunOptions:
    """Single source of truth for what the run does.

    Attributes:
        dry_run: Preview mutating stages instead of executing them.
        setup_vault: Whether to start Vault and seed secrets.
        create_cluster: Whether to create and prepare the cluster.
        recreate_cluster: Whether to delete an existing cluster first.
        bootstrap: Whether to install ArgoCD and the root applications.
        setup_network: Whether to start the tunnel and update /etc/hosts.
        install_gpu: Whether to install the GPU device plugin on GPU clusters.
    """

    dry_run: bool = False
    setup_vault: bool = True
    create_cluster: bool = True
    recreate_cluster: bool = False
    bootstrap: bool = True
    setup_network: bool = True
    install_gpu: bool = True


@dataclass
class RunState:
    """Facts discovered while stages run, read by later stages and the summaries."""

    kubectl_context: str = ""
    cluster_type: str = ""
    gateway_ip: str = ""
    tunnel_pid: int | None = None
    tunnel_log: Path | None = None


@dataclass(frozen=True)
class RunContext:
    """Everything a stage needs, built once per invocation and passed explicitly."""

    cluster_cfg: ClusterConfig
    vault_cfg: VaultConfig
    bootstrap_cfg: BootstrapConfig
    options: RunOptions
    waiter: ConditionWaiter
    retry: RetryExecutor
    supervisor: ProcessSupervisor
    state: RunState = field(default_factory=RunState)


# ============================================================================
# Config resolution
# ============================================================================

def validate_flags(
    provider: str | None,
    topology: str | None,
    cpus: int | None,
    memory: str | None,
    disk: str | None,
    skip_network: bool,
    skip_bootstrap: bool,
) -> None:
    """Validate flag combinations for consistency.

    Args:
        provider: Cluster provider override, or None.
        topology: kind topology descriptor override, or None.
        cpus: minikube CPU override, or None.
        memory: minikube memory override, or None.
        disk: minikube disk override, or None.
        skip_network: Whether the networking stages are skipped.
        skip_bootstrap: Whether the GitOps bootstrap is skipped.

    Raises:
        typer.BadParameter: If the provider is unknown.
    """
    if provider is not None and provider not in (PROVIDER_KIND, PROVIDER_MINIKUBE):
        raise typer.BadParameter(f"--provider must be '{PROVIDER_KIND}' or '{PROVIDER_MINIKUBE}'")

    minikube_flags = cpus is not None or memory is not None or disk is not None
    if provider == PROVIDER_KIND and minikube_flags:
        logger.warning("--cpus/--memory/--disk only apply to minikube; kind nodes use the allocation table")
    if provider == PROVIDER_MINIKUBE and topology is not None:
        logger.warning("--topology is ignored for minikube")
    if skip_bootstrap and not skip_network:
        logger.warning("--skip-bootstrap without --skip-network; the gateway IP wait needs the mesh installed")


_FLAG_FOR_FIELD = {
    "provider": "--provider",
    "topology": "--topology",
    "minikube_cpus": "--cpus",
    "minikube_memory": "--memory",
    "minikube_disk": "--disk",
}


def _describe_invalid_flags(err: ValidationError) -> str:
    problems = []
    for error in err.errors():
        field_name = str(error["loc"][0]) if error["loc"] else ""
        problems.append(f"{_FLAG_FOR_FIELD.get(field_name, field_name)}: {error['msg']}")
    return "; ".join(problems)


def resolve_config(
    *,
    provider: str | None = None,
    topology: str | None = None,
    cpus: int | None = None,
    memory: str | None = None,
    disk: str | None = None,
    dry_run: bool = False,
    skip_vault: bool = False,
    skip_cluster: bool = False,
    recreate: bool = False,
    skip_bootstrap: bool = False,
    skip_network: bool = False,
    skip_gpu: bool = False,
) -> tuple[ClusterConfig, VaultConfig, BootstrapConfig, RunOptions]:
    """Merge CLI overrides, environment variables, and defaults into config objects.

    Resolution priority: CLI arguments > BOOTSTRAP_*/VAULT_* environment variables > defaults.
    CLI overrides are validated against the same constraints as the environment.

    Returns:
        Tuple of (ClusterConfig, VaultConfig, BootstrapConfig, RunOptions).

    Raises:
        typer.BadParameter: If an override violates a field constraint.
    """
    cluster_cfg = ClusterConfig()
    vault_cfg = VaultConfig()
    bootstrap_cfg = BootstrapConfig()

    # CLI overrides (CLI > env > default)
    overrides: dict = {}
    if provider is not None:
        overrides["provider"] = provider
    if topology is not None:
        overrides["topology"] = topology
    if cpus is not None:
        overrides["minikube_cpus"] = cpus
    if memory is not None:
        overrides["minikube_memory"] = memory
    if disk is not None:
        overrides["minikube_disk"] = disk
    if overrides:
        try:
            cluster_cfg = ClusterConfig.model_validate({**cluster_cfg.model_dump(), **overrides})
        except ValidationError as err:
            raise typer.BadParameter(_describe_invalid_flags(err)) from err

    options = RunOptions(
        dry_run=dry_run,
        setup_vault=not skip_vault,
        create_cluster=not skip_cluster,
        recreate_cluster=recreate and not skip_cluster,
        bootstrap=not skip_bootstrap,
        setup_network=not skip_network,
        install_gpu=not skip_gpu,
    )
    return cluster_cfg, vault_cfg, bootstrap_cfg, options


# ============================================================================
# Display
# ============================================================================

def display_config(
    options: RunOptions,
    cluster_cfg: ClusterConfig,
    vault_cfg: VaultConfig,
    bootstrap_cfg: BootstrapConfig,
) -> None:
    """Print only config relevant to requested actions."""
    console.print(Panel.fit("Configuration", style="bold blue"))
    if options.dry_run:
        console.print("[yellow]\U0001f50d DRY RUN MODE - no changes will be applied[/yellow]")

    if options.create_cluster:
        console.print("[yellow]Cluster:[/yellow]")
        console.print(f"  provider        : {cluster_cfg.provider}")
        if cluster_cfg.provider == PROVIDER_KIND:
            console.print(f"  topology        : {cluster_cfg.topology_path}")
        else:
            console.print(f"  cluster_name    : {cluster_cfg.cluster_name}")
            console.print(f"  cpus            : {cluster_cfg.minikube_cpus}")
            console.print(f"  memory          : {cluster_cfg.minikube_memory}")
            console.print(f"  disk            : {cluster_cfg.minikube_disk}")

    if options.setup_vault:
        console.print("[yellow]Vault:[/yellow]")
        console.print(f"  container       : {vault_cfg.container_name}")
        console.print(f"  address         : {vault_cfg.external_addr}")
        console.print(f"  secrets_file    : {vault_cfg.secrets_file}")

    if options.bootstrap:
        console.print("[yellow]GitOps:[/yellow]")
        console.print(f"  repo_root       : {bootstrap_cfg.repo_root}")
        console.print(f"  gitops_repo_url : {bootstrap_cfg.gitops_repo_url}")

    console.print(f"[yellow]Summaries:[/yellow] {bootstrap_cfg.output_dir}")
