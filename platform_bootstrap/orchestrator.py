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

"""Orchestration functions that compose domain modules into staged workflows."""

from __future__ import annotations

from pathlib import Path

import docker
from rich.panel import Panel
from rich.table import Table

from platform_bootstrap import console, logger
from platform_bootstrap.cluster import (
    apply_resource_limits,
    check_cluster_connectivity,
    cluster_exists,
    create_cluster,
    delete_cluster,
    prepare_persistent_storage,
    resolve_cluster_name,
    wait_for_nodes,
)
from platform_bootstrap.components import (
    apply_root_applications,
    bootstrap_summary_payload,
    install_argocd,
    install_device_plugin,
    prepare_cluster_secrets,
)
from platform_bootstrap.config import (
    BootstrapConfig,
    ClusterConfig,
    RunContext,
    RunOptions,
    VaultConfig,
    display_config,
    resolve_config,
    validate_flags,
)
from platform_bootstrap.constants import (
    PROVIDER_KIND,
    REL_APP_PROJECTS,
    REL_ARGOCD_BASE,
    REL_ROOT_APP,
    REL_SECURITY_APPSET,
    REL_STORAGE_MANIFESTS,
    SUMMARY_BOOTSTRAP,
    SUMMARY_NETWORK,
    SUMMARY_RUN,
    SUMMARY_VAULT,
    TUNNEL_PROCESS_NAME,
)
from platform_bootstrap.errors import ExternalSystemError, PreflightError
from platform_bootstrap.network import (
    clean_hosts_file,
    network_summary_payload,
    start_tunnel,
    stop_tunnels,
    update_hosts_file,
    wait_for_gateway_ip,
)
from platform_bootstrap.recorder import RunSummary, RunSummaryRecorder, StageStatus, load_summary
from platform_bootstrap.retrying import RetryExecutor
from platform_bootstrap.sequencer import Stage, StageSequencer, render_stage_table
from platform_bootstrap.supervisor import ProcessSupervisor
from platform_bootstrap.utils import missing_commands
from platform_bootstrap.vault import (
    DEFAULT_SECRET_RECORDS,
    find_missing,
    load_secret_environment,
    setup_vault,
    vault_summary_payload,
)
from platform_bootstrap.waiting import ConditionWaiter

# ============================================================================
# Context
# ============================================================================


def build_context(
    cluster_cfg: ClusterConfig,
    vault_cfg: VaultConfig,
    bootstrap_cfg: BootstrapConfig,
    options: RunOptions,
) -> RunContext:
    """Wire the shared primitives into one context for every stage of a run."""
    waiter = ConditionWaiter()
    return RunContext(
        cluster_cfg=cluster_cfg,
        vault_cfg=vault_cfg,
        bootstrap_cfg=bootstrap_cfg,
        options=options,
        waiter=waiter,
        retry=RetryExecutor(),
        supervisor=ProcessSupervisor(bootstrap_cfg.state_dir, waiter=waiter),
    )


# ============================================================================
# Pre-flight
# ============================================================================


def required_commands(cluster_cfg: ClusterConfig, options: RunOptions) -> list[str]:
    """CLI tools the enabled stages shell out to."""
    kind = cluster_cfg.provider == PROVIDER_KIND
    cmds = ["docker"]
    if options.create_cluster or options.bootstrap or options.setup_network or options.install_gpu:
        cmds.append("kubectl")
    if options.create_cluster:
        cmds.extend(["kind", "nvkind"] if kind else ["minikube"])
    if options.bootstrap:
        cmds.append("kustomize")
    if options.install_gpu:
        cmds.append("helm")
    if options.setup_network:
        cmds.append("cloud-provider-kind" if kind else "minikube")
    return list(dict.fromkeys(cmds))


def preflight_deficiencies(ctx: RunContext) -> list[str]:
    """Collect everything the enabled stages would be missing, without side effects."""
    options = ctx.options
    cluster_cfg = ctx.cluster_cfg
    repo_root = Path(ctx.bootstrap_cfg.repo_root)

    deficiencies = [f"command: {cmd}" for cmd in missing_commands(required_commands(cluster_cfg, options))]

    if options.create_cluster:
        if cluster_cfg.provider == PROVIDER_KIND:
            if not cluster_cfg.topology_path.is_file():
                deficiencies.append(f"topology: {cluster_cfg.topology_path}")
        elif not (repo_root / REL_STORAGE_MANIFESTS).exists():
            deficiencies.append(f"path: {repo_root / REL_STORAGE_MANIFESTS}")

    if options.setup_vault:
        environment = load_secret_environment(ctx.vault_cfg.secrets_file, ctx.vault_cfg.ssh_key_file)
        deficiencies.extend(f"variable: {name}" for name in find_missing(DEFAULT_SECRET_RECORDS, environment))

    if options.bootstrap:
        key_file = ctx.vault_cfg.ssh_key_file
        if not key_file.is_file():
            deficiencies.append(f"ssh key: {key_file}")
        for rel in (REL_ARGOCD_BASE, REL_APP_PROJECTS, REL_SECURITY_APPSET, REL_ROOT_APP):
            if not (repo_root / rel).exists():
                deficiencies.append(f"path: {repo_root / rel}")
    return deficiencies


def run_preflight(ctx: RunContext) -> None:
    """Fail with the full list of deficiencies, or report that all checks passed.

    Raises:
        PreflightError: If anything required is missing.
    """
    console.print(Panel.fit("Checking prerequisites", style="bold blue"))
    deficiencies = preflight_deficiencies(ctx)
    if deficiencies:
        for item in deficiencies:
            console.print(f"[red]  \u2717 {item}[/red]")
        raise PreflightError("Pre-flight checks failed", deficiencies)
    console.print("[green]\u2705 All prerequisites satisfied[/green]")


# ============================================================================
# Stage assembly
# ============================================================================


def build_dev_stages(ctx: RunContext, recorder: RunSummaryRecorder) -> list[Stage]:
    """Declare the full local platform bring-up, in execution order.

    Args:
        ctx: Run context shared by every stage.
        recorder: Recorder receiving the per-phase summaries.

    Returns:
        Stages for the sequencer. Stages switched off by CLI flags are
        included with ``enabled=False`` so they show up as skipped.
    """
    options = ctx.options
    kind = ctx.cluster_cfg.provider == PROVIDER_KIND
    cluster_on = options.create_cluster
    network_on = options.setup_network

    def _vault() -> None:
        setup_vault(ctx)
        recorder.write_phase_summary(SUMMARY_VAULT, vault_summary_payload(ctx.vault_cfg))

    def _root_apps() -> None:
        apply_root_applications(ctx)
        recorder.write_phase_summary(SUMMARY_BOOTSTRAP, bootstrap_summary_payload(ctx))

    def _network_summary() -> None:
        recorder.write_phase_summary(SUMMARY_NETWORK, network_summary_payload(ctx))

    stages = [
        Stage("preflight", lambda: run_preflight(ctx), dry_run_safe=False),
        Stage(
            "vault", _vault,
            preview=f"start Vault container '{ctx.vault_cfg.container_name}' and seed secrets",
            enabled=options.setup_vault,
        ),
        Stage(
            "create-cluster", lambda: create_cluster(ctx),
            preview=f"create {ctx.cluster_cfg.provider} cluster '{resolve_cluster_name(ctx.cluster_cfg)}'",
            enabled=cluster_on,
        ),
    ]
    if kind:
        stages.append(Stage(
            "resource-limits", lambda: apply_resource_limits(ctx),
            preview="apply CPU/memory limits to node containers",
            enabled=cluster_on,
        ))
    stages.append(Stage(
        "wait-nodes", lambda: wait_for_nodes(ctx),
        preview="wait for all nodes to be Ready",
        enabled=cluster_on,
    ))
    if not kind:
        stages.append(Stage(
            "persistent-storage", lambda: prepare_persistent_storage(ctx),
            preview="create host-path storage directories and apply storage manifests",
            enabled=cluster_on,
        ))
    stages += [
        Stage(
            "connectivity", lambda: check_cluster_connectivity(ctx),
            preview="verify kubectl connectivity",
            enabled=options.bootstrap or network_on or options.install_gpu,
        ),
        Stage(
            "bootstrap-secrets", lambda: prepare_cluster_secrets(ctx),
            preview="create bootstrap namespaces and secrets",
            enabled=options.bootstrap,
        ),
        Stage("argocd", lambda: install_argocd(ctx), preview="install ArgoCD", enabled=options.bootstrap),
        Stage(
            "root-applications", _root_apps,
            preview="apply AppProjects, ApplicationSets and the root Application",
            enabled=options.bootstrap,
        ),
        Stage(
            "device-plugin", lambda: install_device_plugin(ctx),
            abort_on_failure=False,
            preview="install the NVIDIA device plugin on GPU nodes",
            enabled=options.install_gpu,
        ),
        Stage("tunnel", lambda: start_tunnel(ctx), preview="start the LoadBalancer tunnel", enabled=network_on),
        Stage(
            "gateway-ip", lambda: wait_for_gateway_ip(ctx),
            abort_on_failure=False,
            preview="wait for the gateway LoadBalancer IP",
            enabled=network_on,
        ),
        Stage(
            "hosts-file", lambda: update_hosts_file(ctx),
            abort_on_failure=False,
            preview="point exposed hostnames at the gateway in /etc/hosts",
            enabled=network_on and ctx.bootstrap_cfg.update_hosts,
        ),
        Stage(
            "network-summary", _network_summary,
            abort_on_failure=False,
            preview="write the network summary",
            enabled=network_on,
        ),
    ]
    return stages


def _print_access_info(ctx: RunContext) -> None:
    bootstrap = load_summary(ctx.bootstrap_cfg.output_dir, SUMMARY_BOOTSTRAP) or {}
    password = bootstrap.get("argocd", {}).get("password")
    console.print(Panel.fit("Local platform is up", style="bold green"))
    if ctx.state.gateway_ip:
        console.print(f"  Gateway IP : {ctx.state.gateway_ip}")
    if ctx.options.setup_vault:
        console.print(f"  Vault      : {ctx.vault_cfg.external_addr} (token: {ctx.vault_cfg.root_token})")
    if password:
        console.print(f"  ArgoCD     : admin / {password}")
    console.print(f"  Summaries  : {ctx.bootstrap_cfg.output_dir}")


# ============================================================================
# Public API
# ============================================================================


def run_dev_setup(
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
) -> int:
    """Bring up the local platform: vault, cluster, GitOps bootstrap, GPU, networking.

    Args:
        provider: Cluster provider override, or None.
        topology: kind topology descriptor override, or None.
        cpus: minikube CPU override, or None.
        memory: minikube memory override, or None.
        disk: minikube disk override, or None.
        dry_run: Preview mutating stages without executing them.
        skip_vault: Whether to skip the Vault stage.
        skip_cluster: Whether to reuse the current cluster instead of creating one.
        recreate: Whether to delete and recreate an existing cluster.
        skip_bootstrap: Whether to skip the ArgoCD bootstrap.
        skip_network: Whether to skip tunnel and /etc/hosts setup.
        skip_gpu: Whether to skip the NVIDIA device plugin.

    Returns:
        Process exit code: 0 on success, 1 if an aborting stage failed.
    """
    validate_flags(provider, topology, cpus, memory, disk, skip_network, skip_bootstrap)
    cluster_cfg, vault_cfg, bootstrap_cfg, options = resolve_config(
        provider=provider,
        topology=topology,
        cpus=cpus,
        memory=memory,
        disk=disk,
        dry_run=dry_run,
        skip_vault=skip_vault,
        skip_cluster=skip_cluster,
        recreate=recreate,
        skip_bootstrap=skip_bootstrap,
        skip_network=skip_network,
        skip_gpu=skip_gpu,
    )
    display_config(options, cluster_cfg, vault_cfg, bootstrap_cfg)

    ctx = build_context(cluster_cfg, vault_cfg, bootstrap_cfg, options)
    recorder = RunSummaryRecorder(bootstrap_cfg.output_dir, dry_run=options.dry_run)
    sequencer = StageSequencer(build_dev_stages(ctx, recorder), recorder=recorder, dry_run=options.dry_run)

    with ctx.supervisor.session():
        result = sequencer.run()

    console.print(render_stage_table(result.results))
    if result.aborted:
        console.print(f"[red]\u274c Setup failed; see {recorder.path_for(SUMMARY_RUN)}[/red]")
    elif options.dry_run:
        console.print("[green]\u2705 Dry run complete - no changes were applied[/green]")
    else:
        _print_access_info(ctx)
    return result.exit_code


def run_vault_setup(*, dry_run: bool = False) -> int:
    """Run only the credentials stage: pre-flight, Vault container, and secret seeding."""
    cluster_cfg, vault_cfg, bootstrap_cfg, options = resolve_config(
        dry_run=dry_run,
        skip_cluster=True,
        skip_bootstrap=True,
        skip_network=True,
        skip_gpu=True,
    )
    display_config(options, cluster_cfg, vault_cfg, bootstrap_cfg)

    ctx = build_context(cluster_cfg, vault_cfg, bootstrap_cfg, options)
    recorder = RunSummaryRecorder(bootstrap_cfg.output_dir, dry_run=dry_run)

    def _vault() -> None:
        setup_vault(ctx)
        recorder.write_phase_summary(SUMMARY_VAULT, vault_summary_payload(vault_cfg))

    stages = [
        Stage("preflight", lambda: run_preflight(ctx), dry_run_safe=False),
        Stage("vault", _vault, preview=f"start Vault container '{vault_cfg.container_name}' and seed secrets"),
    ]
    result = StageSequencer(stages, recorder=recorder, dry_run=dry_run).run()
    console.print(render_stage_table(result.results))
    if not result.aborted and not dry_run:
        console.print(f"[green]\u2705 Vault ready: export VAULT_ADDR={vault_cfg.external_addr} "
                      f"VAULT_TOKEN={vault_cfg.root_token}[/green]")
    return result.exit_code


def _remove_vault_container(vault_cfg: VaultConfig) -> None:
    try:
        client = docker.from_env()
    except docker.errors.DockerException as err:
        raise ExternalSystemError(f"Failed to connect to Docker: {err}") from err
    try:
        client.containers.get(vault_cfg.container_name).remove(force=True)
        console.print(f"[green]\u2705 Removed Vault container '{vault_cfg.container_name}'[/green]")
    except docker.errors.NotFound:
        console.print(f"[yellow]\u26a0\ufe0f  Vault container '{vault_cfg.container_name}' not found[/yellow]")
    except docker.errors.APIError as err:
        raise ExternalSystemError(f"Failed to remove Vault container: {err}") from err
    finally:
        client.close()


def run_dev_teardown(*, provider: str | None = None, topology: str | None = None, remove_vault: bool = False) -> int:
    """Tear down the local platform: tunnel, cluster, /etc/hosts block, optionally Vault.

    Every step runs even if an earlier one failed.

    Returns:
        0 if every step succeeded, else 1.
    """
    cluster_cfg, vault_cfg, bootstrap_cfg, _ = resolve_config(provider=provider, topology=topology)
    supervisor = ProcessSupervisor(bootstrap_cfg.state_dir)
    console.print(Panel.fit("Stopping local platform", style="bold blue"))

    def _stop_tunnel() -> None:
        stopped = stop_tunnels(supervisor)
        if stopped:
            console.print(f"[green]\u2705 Stopped tunnel processes: {', '.join(map(str, stopped))}[/green]")
        else:
            console.print("[yellow]\u2139\ufe0f  No tunnel process running[/yellow]")

    def _clean_hosts() -> None:
        if clean_hosts_file():
            console.print("[green]\u2705 Removed managed block from /etc/hosts[/green]")
        (bootstrap_cfg.output_dir / f"{SUMMARY_NETWORK}.json").unlink(missing_ok=True)

    stages = [
        # the tunnel holds routes into the cluster; stop it before the cluster disappears
        Stage("stop-tunnel", _stop_tunnel, abort_on_failure=False),
        Stage("delete-cluster", lambda: delete_cluster(cluster_cfg), abort_on_failure=False),
        Stage("clean-hosts", _clean_hosts, abort_on_failure=False),
        Stage(
            "remove-vault", lambda: _remove_vault_container(vault_cfg),
            abort_on_failure=False,
            enabled=remove_vault,
        ),
    ]
    result = StageSequencer(stages).run()
    console.print(render_stage_table(result.results, title="Teardown summary"))
    failed = [r.name for r in result.results if r.status is StageStatus.FAILED]
    if failed:
        logger.error("Teardown steps failed: %s", ", ".join(failed))
        return 1
    console.print("[green]\u2705 Local platform stopped[/green]")
    return 0


def show_status() -> None:
    """Print the last run summary, the phase summaries, and live tunnel/cluster state."""
    cluster_cfg, vault_cfg, bootstrap_cfg, _ = resolve_config()
    output_dir = bootstrap_cfg.output_dir

    run_summary = load_summary(output_dir, SUMMARY_RUN)
    if run_summary is None:
        console.print(f"[yellow]\u2139\ufe0f  No run summary in {output_dir}[/yellow]")
    else:
        summary = RunSummary.model_validate(run_summary)
        title = f"Last run ({summary.started_at:%Y-%m-%d %H:%M:%S}, exit {summary.exit_code})"
        console.print(render_stage_table(summary.stages, title=title))

    table = Table(title="Environment")
    table.add_column("Item")
    table.add_column("State")

    name = resolve_cluster_name(cluster_cfg)
    exists = cluster_exists(cluster_cfg)
    table.add_row(f"{cluster_cfg.provider} cluster '{name}'", "[green]present[/green]" if exists else "[dim]absent[/dim]")

    supervisor = ProcessSupervisor(bootstrap_cfg.state_dir)
    record = supervisor.read_record(TUNNEL_PROCESS_NAME)
    if record is None:
        tunnel = "[dim]not recorded[/dim]"
    elif supervisor.runs_recorded_command(record):
        tunnel = f"[green]running (PID {record.pid})[/green]"
    else:
        tunnel = f"[red]dead (stale PID {record.pid})[/red]"
    table.add_row("tunnel", tunnel)

    vault = load_summary(output_dir, SUMMARY_VAULT)
    table.add_row("vault", vault["vault_info"]["external_address"] if vault else "[dim]not set up[/dim]")

    network = load_summary(output_dir, SUMMARY_NETWORK)
    table.add_row("gateway IP", (network or {}).get("gateway_ip") or "[dim]unknown[/dim]")

    bootstrap = load_summary(output_dir, SUMMARY_BOOTSTRAP)
    table.add_row("kubectl context", (bootstrap or {}).get("kubectl_context") or "[dim]unknown[/dim]")
    console.print(table)
