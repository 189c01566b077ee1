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

"""Teardown command."""

from __future__ import annotations

import typer

from platform_bootstrap.orchestrator import run_dev_teardown


def down(
    provider: str | None = typer.Option(None, "--provider", help="Cluster provider: kind or minikube"),
    topology: str | None = typer.Option(None, "--topology", help="kind topology descriptor"),
    remove_vault: bool = typer.Option(False, "--remove-vault", help="Also remove the Vault container"),
) -> None:
    """Stop the tunnel, delete the cluster, and clean /etc/hosts."""
    raise typer.Exit(run_dev_teardown(provider=provider, topology=topology, remove_vault=remove_vault))
