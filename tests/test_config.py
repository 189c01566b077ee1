"""Tests for configuration resolution."""

from __future__ import annotations

from pathlib import Path

import pydantic
import pytest
import typer

from platform_bootstrap.config import ClusterConfig, VaultConfig, resolve_config, validate_flags

pytestmark = pytest.mark.usefixtures("isolated_settings")


class TestResolveConfig:
    def test_defaults(self):
        cluster_cfg, vault_cfg, bootstrap_cfg, options = resolve_config()

        assert cluster_cfg.provider == "kind"
        assert cluster_cfg.topology_descriptor == "basic.yaml"
        assert vault_cfg.external_addr == "http://127.0.0.1:8200"
        assert options.setup_vault and options.create_cluster and options.setup_network
        assert not options.dry_run and not options.recreate_cluster

    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("BOOTSTRAP_PROVIDER", "minikube")
        monkeypatch.setenv("BOOTSTRAP_MINIKUBE_CPUS", "8")
        monkeypatch.setenv("VAULT_HOST_PORT", "18200")

        cluster_cfg, vault_cfg, _, _ = resolve_config()

        assert cluster_cfg.provider == "minikube"
        assert cluster_cfg.minikube_cpus == 8
        assert cluster_cfg.topology_descriptor == "minikube"
        assert vault_cfg.external_addr == "http://127.0.0.1:18200"

    def test_cli_overrides_environment(self, monkeypatch):
        monkeypatch.setenv("BOOTSTRAP_TOPOLOGY", "basic.yaml")

        cluster_cfg, _, _, _ = resolve_config(topology="multinode-gpu.yaml", memory="24g")

        assert cluster_cfg.topology == "multinode-gpu.yaml"
        assert cluster_cfg.minikube_memory == "24g"

    @pytest.mark.parametrize(
        ("overrides", "flag"),
        [
            ({"cpus": 0}, "--cpus"),
            ({"memory": "lots"}, "--memory"),
            ({"disk": "-5"}, "--disk"),
            ({"provider": "k3d"}, "--provider"),
        ],
    )
    def test_invalid_overrides_are_rejected(self, overrides, flag):
        with pytest.raises(typer.BadParameter, match=flag):
            resolve_config(**{"provider": "minikube", **overrides})

    def test_overrides_keep_environment_values(self, monkeypatch):
        monkeypatch.setenv("BOOTSTRAP_MINIKUBE_DISK", "200g")

        cluster_cfg, _, _, _ = resolve_config(provider="minikube", cpus=4)

        assert cluster_cfg.minikube_cpus == 4
        assert cluster_cfg.minikube_disk == "200g"

    def test_skip_flags_become_options(self):
        _, _, _, options = resolve_config(
            dry_run=True, skip_vault=True, skip_cluster=True, recreate=True, skip_network=True, skip_gpu=True,
        )

        assert options.dry_run
        assert not options.setup_vault
        assert not options.create_cluster
        assert not options.recreate_cluster
        assert not options.setup_network
        assert not options.install_gpu
        assert options.bootstrap

    def test_output_dirs_come_from_environment(self, isolated_settings):
        _, _, bootstrap_cfg, _ = resolve_config()

        assert bootstrap_cfg.output_dir == isolated_settings / "summaries"
        assert bootstrap_cfg.state_dir == isolated_settings / "state"


class TestConfigClasses:
    def test_unknown_provider_is_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ClusterConfig(provider="k3d")

    def test_configs_are_frozen(self):
        cfg = VaultConfig()

        with pytest.raises(pydantic.ValidationError):
            cfg.host_port = 9000

    def test_topology_path_resolves_against_kind_dir(self):
        cfg = ClusterConfig(topology="multinode-gpu.yaml", kind_config_dir=Path("/repo/kind"))

        assert cfg.topology_path == Path("/repo/kind/multinode-gpu.yaml")

    def test_absolute_topology_path_is_kept(self, tmp_path):
        cfg = ClusterConfig(topology=str(tmp_path / "custom.yaml"))

        assert cfg.topology_path == tmp_path / "custom.yaml"


class TestValidateFlags:
    def test_unknown_provider(self):
        with pytest.raises(typer.BadParameter):
            validate_flags("k3d", None, None, None, None, False, False)

    def test_minikube_flags_on_kind_only_warn(self, caplog):
        validate_flags("kind", None, 8, "24g", None, False, False)

        assert "only apply to minikube" in caplog.text

    def test_valid_combination_is_silent(self, caplog):
        validate_flags("minikube", None, 8, "24g", "100g", True, True)

        assert caplog.text == ""
