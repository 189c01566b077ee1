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

"""Credentials-only command."""

from __future__ import annotations

import typer

from platform_bootstrap.orchestrator import run_vault_setup


def vault(
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate secrets without starting Vault"),
) -> None:
    """Start the dev Vault container and seed platform secrets."""
    raise typer.Exit(run_vault_setup(dry_run=dry_run))
