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

"""Dev-mode Vault container, secret catalogue, and idempotent secret seeding."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import docker
from dotenv import dotenv_values
from rich.panel import Panel

from platform_bootstrap import console, logger
from platform_bootstrap.config import RunContext, VaultConfig
from platform_bootstrap.constants import (
    SSH_PRIVATE_KEY_VARIABLE,
    VAULT_ALREADY_ENABLED_MARKER,
    VAULT_KV_MOUNT,
    VAULT_READY_POLL_INTERVAL_SECONDS,
    VAULT_READY_TIMEOUT_SECONDS,
)
from platform_bootstrap.errors import ExternalSystemError, PreflightError
from platform_bootstrap.waiting import ConditionWaiter


# ============================================================================
# Secret records
# ============================================================================

@dataclass(frozen=True)
class EnvRef:
    """A secret field whose value is read from an environment variable."""

    name: str


def env(name: str) -> EnvRef:
    return EnvRef(name)


@dataclass(frozen=True)
class SecretRecord:
    """One secret at a hierarchical path.

    Attributes:
        path: Path below the kv mount, e.g. ``platform/docker/registry``.
        fields: Field name to literal value or EnvRef.
    """

    path: str
    fields: Mapping[str, str | EnvRef] = field(default_factory=dict)

    def required_variables(self) -> list[str]:
        return [value.name for value in self.fields.values() if isinstance(value, EnvRef)]

    def missing(self, environment: Mapping[str, str]) -> list[str]:
        """Names of unset or empty variables (or empty literal fields) for this record."""
        missing = []
        for name, value in self.fields.items():
            if isinstance(value, EnvRef):
                if not environment.get(value.name):
                    missing.append(value.name)
            elif not value:
                missing.append(f"{self.path}:{name}")
        return missing

    def resolve(self, environment: Mapping[str, str]) -> dict[str, str]:
        return {
            name: environment[value.name] if isinstance(value, EnvRef) else value
            for name, value in self.fields.items()
        }


def _smtp(realm: str) -> SecretRecord:
    prefix = f"KEYCLOAK_SMTP_{realm.upper()}"
    return SecretRecord(f"platform/auth/keycloak/realms/{realm}/smtp", {
        "host": env(f"{prefix}_HOST"),
        "port": env(f"{prefix}_PORT"),
        "user": env(f"{prefix}_USER"),
        "password": env(f"{prefix}_PASSWORD"),
        "from": env(f"{prefix}_FROM"),
        "fromName": env(f"{prefix}_FROM_NAME"),
    })


def _oauth2_proxy(realm: str) -> SecretRecord:
    suffix = realm.upper()
    return SecretRecord(f"platform/auth/oauth2-proxy/{realm}", {
        "clientId": env(f"OAUTH2_PROXY_CLIENT_ID_{suffix}"),
        "clientSecret": env(f"OAUTH2_PROXY_CLIENT_SECRET_{suffix}"),
        "cookieSecret": env(f"OAUTH2_PROXY_COOKIE_SECRET_{suffix}"),
    })


def _db_user(path: str, prefix: str) -> SecretRecord:
    return SecretRecord(path, {"username": env(f"{prefix}_USER"), "password": env(f"{prefix}_PASSWORD")})


DEFAULT_SECRET_RECORDS: tuple[SecretRecord, ...] = (
    SecretRecord("platform/gitops/repos/gitops", {
        "url": env("GITOPS_REPO_URL"),
        "type": "git",
        "sshPrivateKey": env(SSH_PRIVATE_KEY_VARIABLE),
    }),
    SecretRecord("platform/gitops/argo-workflows/github-service-account-token", {
        "token": env("ARGO_WORKFLOWS_GITHUB_SERVICE_ACCOUNT_TOKEN"),
    }),
    SecretRecord("platform/docker/registry", {
        "username": env("DOCKERHUB_USERNAME"),
        "password": env("DOCKERHUB_TOKEN"),
    }),
    SecretRecord("platform/storage/cnpg/superuser", {
        "username": env("DB_SUPERUSER"),
        "password": env("DB_SUPERUSER_PASSWORD"),
    }),
    _db_user("platform/storage/cnpg/keycloak", "DB_KEYCLOAK"),
    SecretRecord("platform/auth/keycloak/admin", {"password": env("KEYCLOAK_ADMIN_PASSWORD")}),
    _smtp("internal"),
    _smtp("external"),
    _oauth2_proxy("internal"),
    _oauth2_proxy("external"),
    _db_user("ai/storage/cnpg/mlflow", "DB_MLFLOW"),
    _db_user("demo-app/storage/cnpg/demo-app", "DB_DEMO_APP"),
    SecretRecord("platform/storage/pgadmin/credentials", {"password": env("PGADMIN_PASSWORD")}),
    SecretRecord("platform/storage/minio-tenant/credentials", {
        "accesskey": env("MINIO_ACCESS_KEY"),
        "secretkey": env("MINIO_TENANT_PASSWORD"),
    }),
    SecretRecord("platform/observability/grafana/credentials", {
        "username": env("GRAFANA_ADMIN_USER"),
        "password": env("GRAFANA_ADMIN_PASSWORD"),
    }),
)


def load_secret_environment(
    secrets_file: Path,
    ssh_key_file: Path,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge the process environment, the secrets file, and the GitOps SSH key.

    Values from ``secrets_file`` override the process environment. Missing
    files are not an error here; the variables they would provide are
    reported by the seeder's pre-flight check instead.

    Args:
        secrets_file: dotenv-formatted file of secret variables.
        ssh_key_file: Private key exposed as ``GITOPS_SSH_PRIVATE_KEY``.
        base: Starting environment, defaults to ``os.environ``.

    Returns:
        Flat variable mapping.
    """
    environment = dict(os.environ if base is None else base)
    if secrets_file.is_file():
        values = dotenv_values(secrets_file)
        environment.update({key: value for key, value in values.items() if value is not None})
        logger.info("Loaded %d variables from %s", len(values), secrets_file)
    else:
        logger.warning("Secrets file %s not found; using process environment only", secrets_file)

    if ssh_key_file.is_file():
        environment[SSH_PRIVATE_KEY_VARIABLE] = ssh_key_file.read_text()
    else:
        logger.warning("GitOps SSH key %s not found", ssh_key_file)
    return environment


# ============================================================================
# Secret store
# ============================================================================

class SecretStore(Protocol):
    def put(self, path: str, fields: Mapping[str, str]) -> None: ...

    def get(self, path: str) -> dict[str, str] | None: ...


class DockerVaultStore:
    """Secret store backed by ``vault kv`` running inside the dev container."""

    def __init__(self, container, vault_cfg: VaultConfig, mount: str = VAULT_KV_MOUNT) -> None:
        self._container = container
        self._cfg = vault_cfg
        self._mount = mount

    def _vault(self, *args: str) -> tuple[int, str]:
        result = self._container.exec_run(
            ["vault", *args],
            environment={
                "VAULT_ADDR": f"http://127.0.0.1:{self._cfg.internal_port}",
                "VAULT_TOKEN": self._cfg.root_token,
            },
        )
        output = result.output.decode(errors="replace") if result.output else ""
        return result.exit_code, output

    def put(self, path: str, fields: Mapping[str, str]) -> None:
        code, output = self._vault("kv", "put", f"{self._mount}/{path}", *(f"{k}={v}" for k, v in fields.items()))
        if code != 0:
            raise ExternalSystemError(f"vault kv put {path} failed: {output.strip()}")

    def get(self, path: str) -> dict[str, str] | None:
        code, output = self._vault("kv", "get", "-format=json", f"{self._mount}/{path}")
        if code != 0:
            return None
        return json.loads(output)["data"]["data"]

    def status(self) -> bool:
        code, _ = self._vault("status")
        return code == 0

    def enable_kv(self) -> None:
        """Enable the kv v2 engine; an already-mounted engine is success."""
        code, output = self._vault("secrets", "enable", f"-path={self._mount}", "-version=2", "kv")
        if code == 0:
            console.print(f"[green]\u2705 Enabled kv v2 engine at '{self._mount}/'[/green]")
        elif VAULT_ALREADY_ENABLED_MARKER in output:
            console.print(f"[yellow]\u26a0\ufe0f  KV engine already enabled at '{self._mount}/'[/yellow]")
        else:
            raise ExternalSystemError(f"Enabling kv engine failed: {output.strip()}")


# ============================================================================
# Seeder
# ============================================================================

@dataclass(frozen=True)
class SeedResult:
    """Outcome of a seeding pass.

    Attributes:
        ok: True if every record was written.
        missing: Every missing or empty variable, in record order, without duplicates.
        seeded: Paths written, in order.
    """

    ok: bool
    missing: tuple[str, ...] = ()
    seeded: tuple[str, ...] = ()

    def raise_for_missing(self) -> None:
        if self.missing:
            raise PreflightError("Required secret variables are not set", self.missing)


def find_missing(records: Iterable[SecretRecord], environment: Mapping[str, str]) -> list[str]:
    missing: list[str] = []
    for record in records:
        for name in record.missing(environment):
            if name not in missing:
                missing.append(name)
    return missing


class SecretSeeder:
    """Validates then writes secret records with full-overwrite puts.

    Nothing is written unless every record can be resolved. Store errors
    propagate unchanged; there is no internal retry.
    """

    def __init__(self, store: SecretStore) -> None:
        self._store = store

    def seed(self, records: Iterable[SecretRecord], environment: Mapping[str, str]) -> SeedResult:
        records = list(records)
        missing = find_missing(records, environment)
        if missing:
            logger.error("Missing %d secret variables: %s", len(missing), ", ".join(missing))
            return SeedResult(False, missing=tuple(missing))

        seeded = []
        for record in records:
            self._store.put(record.path, record.resolve(environment))
            logger.info("Seeded secret %s", record.path)
            seeded.append(record.path)
        return SeedResult(True, seeded=tuple(seeded))


# ============================================================================
# Container lifecycle
# ============================================================================

def ensure_vault_container(client: docker.DockerClient, vault_cfg: VaultConfig, waiter: ConditionWaiter):
    """Reuse, start, or create the dev-mode Vault container and wait until it answers.

    Args:
        client: Docker client.
        vault_cfg: Vault container settings.
        waiter: Waiter used for the readiness poll.

    Returns:
        The running container.

    Raises:
        ExternalSystemError: If the container cannot be started or never becomes ready.
    """
    console.print(Panel.fit("Starting Vault (dev mode)", style="bold blue"))
    try:
        container = client.containers.get(vault_cfg.container_name)
        if container.status == "running":
            console.print(f"[green]\u2705 Vault container '{vault_cfg.container_name}' is already running[/green]")
        else:
            console.print(f"[yellow]\u2139\ufe0f  Starting stopped container '{vault_cfg.container_name}'...[/yellow]")
            container.start()
    except docker.errors.NotFound:
        console.print(f"[yellow]\u2139\ufe0f  Creating container '{vault_cfg.container_name}'...[/yellow]")
        try:
            container = client.containers.run(
                vault_cfg.image,
                command=[
                    "server", "-dev",
                    f"-dev-root-token-id={vault_cfg.root_token}",
                    f"-dev-listen-address=0.0.0.0:{vault_cfg.internal_port}",
                ],
                name=vault_cfg.container_name,
                cap_add=["IPC_LOCK"],
                ports={f"{vault_cfg.internal_port}/tcp": (vault_cfg.host_ip, vault_cfg.host_port)},
                detach=True,
            )
        except docker.errors.APIError as err:
            raise ExternalSystemError(f"Failed to create Vault container: {err}") from err

    store = DockerVaultStore(container, vault_cfg)

    def _ready() -> bool:
        container.reload()
        return container.status == "running" and store.status()

    result = waiter.wait(
        _ready,
        timeout=VAULT_READY_TIMEOUT_SECONDS,
        poll_interval=VAULT_READY_POLL_INTERVAL_SECONDS,
        description="Vault to accept requests",
    )
    if not result.ok:
        logs = container.logs(tail=20).decode(errors="replace")
        raise ExternalSystemError(f"Vault container did not become ready:\n{logs}")
    console.print(f"[green]\u2705 Vault is ready at {vault_cfg.external_addr}[/green]")
    return container


# ============================================================================
# Stage entry point
# ============================================================================

def vault_summary_payload(vault_cfg: VaultConfig) -> dict:
    return {
        "vault_info": {
            "container_name": vault_cfg.container_name,
            "external_address": vault_cfg.external_addr,
            "internal_port": vault_cfg.internal_port,
            "host_ip": vault_cfg.host_ip,
            "host_port": vault_cfg.host_port,
            "vault_token": vault_cfg.root_token,
        },
        "environment_exports": {
            "VAULT_ADDR": vault_cfg.external_addr,
            "VAULT_TOKEN": vault_cfg.root_token,
        },
        "example_usage": ["vault login $VAULT_TOKEN", f"vault kv list {VAULT_KV_MOUNT}/"],
    }


def setup_vault(ctx: RunContext, records: Iterable[SecretRecord] = DEFAULT_SECRET_RECORDS) -> SeedResult:
    """Bring up the dev Vault, enable kv, and seed every record.

    Raises:
        PreflightError: If secret variables are missing.
        ExternalSystemError: If Docker or Vault fail.
    """
    vault_cfg = ctx.vault_cfg
    environment = load_secret_environment(vault_cfg.secrets_file, vault_cfg.ssh_key_file)
    try:
        client = docker.from_env()
    except docker.errors.DockerException as err:
        raise ExternalSystemError(f"Failed to connect to Docker: {err}") from err
    try:
        container = ensure_vault_container(client, vault_cfg, ctx.waiter)
        store = DockerVaultStore(container, vault_cfg)
        store.enable_kv()
        result = SecretSeeder(store).seed(records, environment)
        result.raise_for_missing()
    finally:
        client.close()
    console.print(f"[green]\u2705 Seeded {len(result.seeded)} secrets[/green]")
    return result
