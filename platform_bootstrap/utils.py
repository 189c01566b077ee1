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

"""Utility functions for kubectl, manifests, and command checks."""

from __future__ import annotations

import subprocess
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import sh
import yaml

from platform_bootstrap.errors import ExternalSystemError


def missing_commands(cmds: Iterable[str]) -> list[str]:
    """Return the commands from ``cmds`` that are not on the system PATH."""
    missing = []
    for cmd in cmds:
        try:
            sh.which(cmd)
        except sh.ErrorReturnCode:
            missing.append(cmd)
    return missing


def run_kubectl(args: list[str], timeout: int = 30) -> tuple[bool, str, str]:
    """Run a kubectl command via subprocess and return (success, stdout, stderr).

    Used for read-only probes where the exact stdout matters (jsonpath output)
    and a failure is an answer rather than an error.

    Args:
        args: kubectl arguments (e.g. ``["get", "pods", "-n", "default"]``).
        timeout: Maximum seconds to wait for the command to complete.

    Returns:
        Tuple of (success, stdout, stderr).
    """
    try:
        result = subprocess.run(
            ["kubectl", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode == 0, result.stdout, result.stderr
    except (subprocess.SubprocessError, OSError) as exc:
        return False, "", str(exc)


def kubectl_output(args: list[str], timeout: int = 30) -> str:
    """Stripped stdout of a kubectl probe, or an empty string if it failed."""
    ok, stdout, _ = run_kubectl(args, timeout)
    return stdout.strip() if ok else ""


def error_text(err: sh.ErrorReturnCode) -> str:
    """Best-effort readable message from a failed sh command."""
    return (err.stderr or err.stdout or b"").decode(errors="replace").strip()


def apply_manifests(manifests: Iterable[Mapping[str, Any]]) -> None:
    """Create-or-update manifests built as Python dicts via ``kubectl apply -f -``.

    Raises:
        ExternalSystemError: If kubectl rejects the manifests.
    """
    docs = yaml.safe_dump_all([dict(m) for m in manifests], sort_keys=False)
    try:
        sh.kubectl("apply", "-f", "-", _in=docs)
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"kubectl apply failed: {error_text(err)}") from err


def apply_yaml(docs: str) -> None:
    """Apply raw YAML text (e.g. rendered kustomize output)."""
    try:
        sh.kubectl("apply", "-f", "-", _in=docs)
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"kubectl apply failed: {error_text(err)}") from err


def apply_path(path: Path, kustomize: bool = False) -> None:
    """Apply a manifest file, a directory of manifests, or a kustomization directory."""
    flag = "-k" if kustomize else "-f"
    try:
        sh.kubectl("apply", flag, str(path))
    except sh.ErrorReturnCode as err:
        raise ExternalSystemError(f"kubectl apply {flag} {path} failed: {error_text(err)}") from err


def namespace_manifest(name: str) -> dict:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def secret_manifest(
    name: str,
    namespace: str,
    string_data: Mapping[str, str],
    labels: Mapping[str, str] | None = None,
) -> dict:
    """Build an Opaque Secret manifest with ``stringData``."""
    metadata: dict[str, Any] = {"name": name, "namespace": namespace}
    if labels:
        metadata["labels"] = dict(labels)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": metadata,
        "type": "Opaque",
        "stringData": dict(string_data),
    }
