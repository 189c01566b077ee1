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

"""GitOps bootstrap (ArgoCD, root applications) and the NVIDIA device plugin."""

from __future__ import annotations

import base64
import binascii
from pathlib import Path

import sh
from rich.panel import Panel

from platform_bootstrap import console, logger
from platform_bootstrap.allocation import ClusterType
from platform_bootstrap.cluster import cluster_type_for
from platform_bootstrap.config import RunContext
from platform_bootstrap.constants import (
    APPLY_INITIAL_DELAY_SECONDS,
    APPLY_MAX_RETRIES,
    ARGOCD_ADMIN_SECRET,
    ARGOCD_REPO_SECRET_LABEL,
    ARGOCD_REPO_SECRET_NAME,
    ARGOCD_SERVER_DEPLOYMENT,
    DEVICE_PLUGIN_POD_LABEL,
    DEVICE_PLUGIN_READY_TIMEOUT_SECONDS,
    HELM_CHART_DEVICE_PLUGIN,
    HELM_RELEASE_DEVICE_PLUGIN,
    HELM_REPO_NVDP,
    HELM_REPO_NVDP_URL,
    LABEL_GPU_PRESENT,
    NS_ARGOCD,
    NS_EXTERNAL_SECRETS,
    NS_NVIDIA,
    REL_APP_PROJECTS,
    REL_ARGOCD_BASE,
    REL_ROOT_APP,
    REL_SECURITY_APPSET,
    VAULT_TOKEN_SECRET,
)
from platform_bootstrap.errors import ExternalSystemError, PreflightError
from platform_bootstrap.utils import (
    apply_manifests,
    apply_path,
    apply_yaml,
    error_text,
    kubectl_output,
    namespace_manifest,
    secret_manifest,
)


def _apply_with_retry(ctx: RunContext, operation, description: str) -> None:
    ctx.retry.run(
        operation,
        max_attempts=APPLY_MAX_RETRIES,
        initial_delay=APPLY_INITIAL_DELAY_SECONDS,
        description=description,
    ).unwrap()


# ============================================================================
# GitOps bootstrap
# ============================================================================

def bootstrap_manifests(ctx: RunContext, ssh_private_key: str) -> list[dict]:
    """Namespaces and secrets ArgoCD and External Secrets need before their first sync.

    Args:
        ctx: Run context.
        ssh_private_key: Private key ArgoCD uses to pull the GitOps repository.

    Returns:
        Manifests in apply order.
    """
    return [
        namespace_manifest(NS_EXTERNAL_SECRETS),
        namespace_manifest(NS_ARGOCD),
        secret_manifest(VAULT_TOKEN_SECRET, NS_EXTERNAL_SECRETS, {"token": ctx.vault_cfg.root_token}),
        secret_manifest(
            ARGOCD_REPO_SECRET_NAME,
            NS_ARGOCD,
            {
                "type": "git",
                "url": ctx.bootstrap_cfg.gitops_repo_url,
                "sshPrivateKey": ssh_private_key,
            },
            labels={ARGOCD_REPO_SECRET_LABEL: "repository"},
        ),
    ]


def prepare_cluster_secrets(ctx: RunContext) -> None:
    """Create the bootstrap namespaces, the Vault token secret, and the repository secret.

    Raises:
        PreflightError: If the GitOps SSH key is missing or empty.
    """
    console.print(Panel.fit("Creating bootstrap namespaces and secrets", style="bold blue"))
    key_file = ctx.vault_cfg.ssh_key_file
    if not key_file.is_file() or not key_file.read_text().strip():
        raise PreflightError("GitOps SSH key is missing or empty", [str(key_file)])

    manifests = bootstrap_manifests(ctx, key_file.read_text())
    _apply_with_retry(ctx, lambda: apply_manifests(manifests), "apply bootstrap secrets")
    console.print(f"[green]\u2705 Created repository secret: {ARGOCD_REPO_SECRET_NAME}[/green]")


def argocd_server_available() -> bool:
    status = kubectl_output([
        "get", "deployment", ARGOCD_SERVER_DEPLOYMENT, "-n", NS_ARGOCD,
        "-o", 'jsonpath={.status.conditions[?(@.type=="Available")].status}',
    ])
    return status == "True"


def install_argocd(ctx: RunContext) -> None:
    """Render the ArgoCD base with kustomize, apply it, and wait for the server."""
    console.print(Panel.fit("Installing ArgoCD", style="bold blue"))
    base = Path(ctx.bootstrap_cfg.repo_root) / REL_ARGOCD_BASE
    try:
        rendered = str(sh.kustomize("build", "--enable-helm", str(base)))
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"Failed to build ArgoCD base manifests: {error_text(err)}") from err

    # CRDs and their custom resources arrive in one apply; the first pass may race CRD registration
    _apply_with_retry(ctx, lambda: apply_yaml(rendered), "apply ArgoCD base")
    console.print("[green]\u2705 ArgoCD base installed[/green]")

    console.print("[yellow]\u2139\ufe0f  Waiting for ArgoCD server to be ready...[/yellow]")
    ctx.waiter.wait(
        argocd_server_available,
        timeout=ctx.bootstrap_cfg.argocd_ready_timeout,
        description=f"deployment/{ARGOCD_SERVER_DEPLOYMENT} Available",
    ).raise_for_timeout()
    console.print("[green]\u2705 ArgoCD server is ready[/green]")


def apply_root_applications(ctx: RunContext) -> None:
    """Apply the AppProjects, the security ApplicationSet, and the root Application."""
    console.print(Panel.fit("Applying ArgoCD applications", style="bold blue"))
    root = Path(ctx.bootstrap_cfg.repo_root)
    for rel in (REL_APP_PROJECTS, REL_SECURITY_APPSET, REL_ROOT_APP):
        path = root / rel
        _apply_with_retry(ctx, lambda path=path: apply_path(path), f"apply {rel}")
        console.print(f"[green]  \u2713 {rel}[/green]")
    console.print("[green]\u2705 ArgoCD applications applied[/green]")


def argocd_admin_password() -> str:
    """Initial admin password, or an empty string if the secret is gone or undecodable."""
    encoded = kubectl_output([
        "-n", NS_ARGOCD, "get", "secret", ARGOCD_ADMIN_SECRET, "-o", "jsonpath={.data.password}",
    ])
    if not encoded:
        return ""
    try:
        return base64.b64decode(encoded).decode()
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Could not decode %s", ARGOCD_ADMIN_SECRET)
        return ""


def bootstrap_summary_payload(ctx: RunContext) -> dict:
    return {
        "kubectl_context": ctx.state.kubectl_context,
        "dry_run": ctx.options.dry_run,
        "argocd": {"username": "admin", "password": argocd_admin_password()},
    }


# ============================================================================
# NVIDIA device plugin
# ============================================================================

def gpu_node_count() -> int:
    output = kubectl_output(["get", "nodes", "-l", f"{LABEL_GPU_PRESENT}=true", "-o", "name"])
    return len(output.split())


def device_plugin_pods_ready() -> bool:
    statuses = kubectl_output([
        "get", "pods", "-n", NS_NVIDIA, "-l", DEVICE_PLUGIN_POD_LABEL,
        "-o", 'jsonpath={.items[*].status.conditions[?(@.type=="Ready")].status}',
    ]).split()
    return bool(statuses) and all(status == "True" for status in statuses)


def install_device_plugin(ctx: RunContext) -> None:
    """Install the NVIDIA k8s-device-plugin on multi-node clusters that have GPU nodes."""
    console.print(Panel.fit("Setting up NVIDIA k8s-device-plugin", style="bold blue"))
    if cluster_type_for(ctx.cluster_cfg) is not ClusterType.MULTI_NODE:
        console.print("[yellow]\u2139\ufe0f  Skipping device plugin installation for single-node cluster[/yellow]")
        return

    gpu_nodes = gpu_node_count()
    if gpu_nodes == 0:
        console.print("[yellow]\u26a0\ufe0f  No GPU nodes found, skipping device plugin installation[/yellow]")
        return

    console.print(f"[yellow]\u2139\ufe0f  Found {gpu_nodes} GPU node(s), installing device plugin...[/yellow]")
    try:
        sh.helm("repo", "add", HELM_REPO_NVDP, HELM_REPO_NVDP_URL, "--force-update")
        sh.helm("repo", "update", HELM_REPO_NVDP)
        sh.helm(
            "upgrade", "-i",
            "--namespace", NS_NVIDIA,
            "--create-namespace",
            "--set", "runtimeClassName=nvidia",
            HELM_RELEASE_DEVICE_PLUGIN, HELM_CHART_DEVICE_PLUGIN,
        )
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"helm install of {HELM_RELEASE_DEVICE_PLUGIN} failed: {error_text(err)}") from err

    result = ctx.waiter.wait(
        device_plugin_pods_ready,
        timeout=DEVICE_PLUGIN_READY_TIMEOUT_SECONDS,
        description="NVIDIA device plugin pods Ready",
    )
    if result.ok:
        console.print("[green]\u2705 NVIDIA device plugin is ready[/green]")
    else:
        console.print("[yellow]\u26a0\ufe0f  NVIDIA device plugin pods may not be fully ready yet[/yellow]")
