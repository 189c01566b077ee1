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

"""LoadBalancer tunnel, gateway IP discovery, and the managed /etc/hosts block."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path

import sh
from rich.panel import Panel

from platform_bootstrap import console, logger
from platform_bootstrap.cluster import resolve_cluster_name
from platform_bootstrap.config import BootstrapConfig, ClusterConfig, RunContext
from platform_bootstrap.constants import (
    EXPOSED_SERVICES,
    EXPOSED_SERVICES_DOMAIN,
    GATEWAY_IP_POLL_INTERVAL_SECONDS,
    HOSTS_BLOCK_MARKER,
    HOSTS_FILE,
    PROVIDER_KIND,
    TUNNEL_MATCH_PATTERNS,
    TUNNEL_PROCESS_NAME,
)
from platform_bootstrap.errors import ExternalSystemError
from platform_bootstrap.supervisor import ProcessHandle, ProcessSupervisor
from platform_bootstrap.utils import error_text, kubectl_output


# ============================================================================
# Tunnel
# ============================================================================

def tunnel_command(cluster_cfg: ClusterConfig, environ: Mapping[str, str] | None = None) -> list[str]:
    """Command line of the LoadBalancer helper for the configured provider.

    ``minikube tunnel`` needs root; the user's minikube home and kubeconfig
    are passed explicitly because sudo resets ``HOME``.
    """
    if cluster_cfg.provider == PROVIDER_KIND:
        return ["cloud-provider-kind"]
    environ = os.environ if environ is None else environ
    home = Path.home()
    minikube_home = environ.get("MINIKUBE_HOME", str(home / ".minikube"))
    kubeconfig = environ.get("KUBECONFIG", str(home / ".kube" / "config"))
    return [
        "sudo", f"MINIKUBE_HOME={minikube_home}", f"KUBECONFIG={kubeconfig}",
        "minikube", "tunnel", "-p", resolve_cluster_name(cluster_cfg),
    ]


def start_tunnel(ctx: RunContext) -> ProcessHandle:
    """Replace any running tunnel with a fresh supervised one."""
    console.print(Panel.fit("Starting LoadBalancer tunnel", style="bold blue"))
    provider = ctx.cluster_cfg.provider
    if provider != PROVIDER_KIND:
        console.print("[yellow]\u2139\ufe0f  Tunnel requires sudo access...[/yellow]")
        try:
            sh.sudo("-v", _fg=True)
        except sh.ErrorReturnCode as err:
            raise ExternalSystemError("sudo access required for the tunnel") from err

    handle = ctx.supervisor.ensure_singleton(
        TUNNEL_PROCESS_NAME,
        tunnel_command(ctx.cluster_cfg),
        TUNNEL_MATCH_PATTERNS[provider],
    )
    ctx.state.tunnel_pid = handle.pid
    ctx.state.tunnel_log = handle.log_file
    console.print(f"[green]\u2705 Tunnel started (PID: {handle.pid}, log: {handle.log_file})[/green]")
    return handle


def stop_tunnels(supervisor: ProcessSupervisor) -> list[int]:
    """Stop the recorded tunnel and every known tunnel helper regardless of provider."""
    stopped: list[int] = []
    for pattern in TUNNEL_MATCH_PATTERNS.values():
        stopped.extend(supervisor.stop(TUNNEL_PROCESS_NAME, pattern))
    return stopped


# ============================================================================
# Gateway
# ============================================================================

def read_gateway_ip(bootstrap_cfg: BootstrapConfig) -> str:
    return kubectl_output([
        "get", "svc", "-n", bootstrap_cfg.gateway_namespace, bootstrap_cfg.gateway_service,
        "-o", "jsonpath={.status.loadBalancer.ingress[0].ip}",
    ])


def wait_for_gateway_ip(ctx: RunContext) -> str:
    """Wait until the ingress gateway has a LoadBalancer IP and record it.

    Raises:
        WaitTimeoutError: If no IP is assigned within the configured budget.
    """
    console.print("[yellow]\u2139\ufe0f  Waiting for Gateway LoadBalancer IP...[/yellow]")
    found: list[str] = []

    def _has_ip() -> bool:
        ip = read_gateway_ip(ctx.bootstrap_cfg)
        if ip:
            found.append(ip)
        return bool(ip)

    ctx.waiter.wait(
        _has_ip,
        timeout=ctx.bootstrap_cfg.gateway_ip_timeout,
        poll_interval=GATEWAY_IP_POLL_INTERVAL_SECONDS,
        description=f"svc/{ctx.bootstrap_cfg.gateway_service} external IP",
    ).raise_for_timeout()
    ctx.state.gateway_ip = found[-1]
    console.print(f"[green]\u2705 Gateway IP: {ctx.state.gateway_ip}[/green]")
    return ctx.state.gateway_ip


# ============================================================================
# /etc/hosts
# ============================================================================

def exposed_hostnames(services: Iterable[str] = EXPOSED_SERVICES, domain: str = EXPOSED_SERVICES_DOMAIN) -> list[str]:
    return [f"{service}.{domain}" for service in services]


def render_hosts_block(ip: str, hostnames: Iterable[str], added: datetime | None = None) -> str:
    """Render the marker-delimited hosts block mapping every hostname to ``ip``."""
    stamp = (added or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines = [f"# {HOSTS_BLOCK_MARKER} START (added {stamp})"]
    lines += [f"{ip} {hostname}" for hostname in hostnames]
    lines.append(f"# {HOSTS_BLOCK_MARKER} END")
    return "\n".join(lines) + "\n"


_BLOCK_RE = re.compile(
    rf"^# {re.escape(HOSTS_BLOCK_MARKER)} START.*?^# {re.escape(HOSTS_BLOCK_MARKER)} END[^\n]*\n?",
    re.MULTILINE | re.DOTALL,
)


def strip_managed_block(content: str) -> str:
    """Remove every managed block; unrelated lines are kept byte-for-byte."""
    return _BLOCK_RE.sub("", content)


def replace_managed_block(content: str, block: str) -> str:
    """Swap the managed block in ``content`` for ``block``, appending it at the end."""
    stripped = strip_managed_block(content)
    if stripped and not stripped.endswith("\n"):
        stripped += "\n"
    return stripped + block


def write_hosts_file(content: str, path: Path = HOSTS_FILE) -> None:
    if os.access(path, os.W_OK):
        path.write_text(content)
        return
    try:
        sh.sudo("tee", str(path), _in=content, _out=os.devnull)
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"Failed to update {path}: {error_text(err)}") from err


def update_hosts_file(ctx: RunContext, path: Path = HOSTS_FILE) -> None:
    """Point every exposed hostname at the gateway IP inside the managed block."""
    console.print(Panel.fit(f"Configuring {path}", style="bold blue"))
    if not ctx.state.gateway_ip:
        console.print(f"[yellow]\u26a0\ufe0f  No gateway IP - skipping {path} configuration[/yellow]")
        return

    hostnames = exposed_hostnames()
    block = render_hosts_block(ctx.state.gateway_ip, hostnames)
    current = path.read_text() if path.is_file() else ""
    try:
        write_hosts_file(replace_managed_block(current, block), path)
    except ExternalSystemError:
        console.print(f"[yellow]\u26a0\ufe0f  Could not update {path}; add these entries manually:[/yellow]")
        console.print(block)
        raise
    console.print(f"[green]\u2705 {path} configured ({len(hostnames)} entries)[/green]")


def clean_hosts_file(path: Path = HOSTS_FILE) -> bool:
    """Remove the managed block. Returns True if the file changed."""
    if not path.is_file():
        return False
    current = path.read_text()
    cleaned = strip_managed_block(current)
    if cleaned == current:
        return False
    write_hosts_file(cleaned, path)
    logger.info("Removed managed block from %s", path)
    return True


def network_summary_payload(ctx: RunContext) -> dict:
    return {
        "gateway_ip": ctx.state.gateway_ip or None,
        "tunnel_pid": ctx.state.tunnel_pid,
        "tunnel_log": str(ctx.state.tunnel_log) if ctx.state.tunnel_log else None,
        "pid_file": str(ctx.supervisor.pid_file(TUNNEL_PROCESS_NAME)),
        "hostnames": exposed_hostnames(),
    }
