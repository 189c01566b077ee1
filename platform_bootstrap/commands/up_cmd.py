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

"""Bring-up command."""

from __future__ import annotations

import typer

from platform_bootstrap.orchestrator import run_dev_setup


def up(
    provider: str | None = typer.Option(
        None, "--provider", help="Cluster provider: kind or minikube (overrides BOOTSTRAP_PROVIDER)"),
    topology: str | None = typer.Option(
        None, "--topology", help="kind topology descriptor, e.g. multinode-gpu.yaml"),
    cpus: int | None = typer.Option(
        None, "--cpus", help="CPUs for the minikube VM"),
    memory: str | None = typer.Option(
        None, "--memory", help="Memory for the minikube VM, e.g. 36g"),
    disk: str | None = typer.Option(
        None, "--disk", help="Disk size for the minikube VM, e.g. 100g"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Preview mutating stages without applying them"),
    skip_vault: bool = typer.Option(
        False, "--skip-vault", help="Skip Vault container and secret seeding"),
    skip_cluster: bool = typer.Option(
        False, "--skip-cluster", help="Use the current cluster instead of creating one"),
    recreate: bool = typer.Option(
        False, "--recreate", help="Delete and recreate an existing cluster"),
    skip_bootstrap: bool = typer.Option(
        False, "--skip-bootstrap", help="Skip ArgoCD and root application bootstrap"),
    skip_network: bool = typer.Option(
        False, "--skip-network", help="Skip the LoadBalancer tunnel and /etc/hosts setup"),
    skip_gpu: bool = typer.Option(
        False, "--skip-gpu", help="Skip the NVIDIA device plugin"),
) -> None:
    """Bring up the local platform.

    Default: Vault + cluster + resource limits + ArgoCD bootstrap + GPU plugin
    + tunnel + /etc/hosts. Use --skip-* flags to opt out of individual stages.
    """
    code = run_dev_setup(
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
    raise typer.Exit(code)
