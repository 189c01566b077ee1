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

"""
cli.py - CLI for bootstrapping the local platform cluster.

Subcommands:
    up      Vault, cluster, GitOps bootstrap, GPU plugin, and networking
    down    Stop the tunnel, delete the cluster, and clean /etc/hosts
    status  Last run summary and live state
    vault   Vault container and secret seeding only

Examples:
    # Full bring-up on kind (default)
    platform-bootstrap up

    # Multi-node GPU topology, preview only
    platform-bootstrap up --topology multinode-gpu.yaml --dry-run

    # minikube with a smaller VM
    platform-bootstrap up --provider minikube --cpus 8 --memory 24g

    # Tear everything down
    platform-bootstrap down
"""

from __future__ import annotations

import logging
import sys

import typer

from platform_bootstrap import console
from platform_bootstrap.commands import down_cmd, status_cmd, up_cmd, vault_cmd

app = typer.Typer(
    help="Bootstrap the local platform cluster.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback() -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.command("up")(up_cmd.up)
app.command("down")(down_cmd.down)
app.command("status")(status_cmd.status)
app.command("vault")(vault_cmd.vault)


def main() -> None:
    try:
        app()
    except Exception as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
