"""Tests for the tunnel command, the gateway IP wait and the managed /etc/hosts block."""

from __future__ import annotations

import dataclasses
from datetime import datetime

import pytest

from platform_bootstrap import network
from platform_bootstrap.config import ClusterConfig, resolve_config
from platform_bootstrap.errors import WaitTimeoutError
from platform_bootstrap.network import (
    clean_hosts_file,
    exposed_hostnames,
    render_hosts_block,
    replace_managed_block,
    strip_managed_block,
    tunnel_command,
)
from platform_bootstrap.orchestrator import build_context
from platform_bootstrap.waiting import ConditionWaiter

pytestmark = pytest.mark.usefixtures("isolated_settings")

ORIGINAL = "127.0.0.1 localhost\n::1 localhost ip6-localhost\n10.0.0.5 nas.lan\n"
ADDED = datetime(2026, 3, 1, 9, 30, 0)


def block(ip: str = "172.18.0.100") -> str:
    return render_hosts_block(ip, ["argocd.internal.opencloudhub.org", "api.opencloudhub.org"], added=ADDED)


class TestHostsBlock:
    def test_render(self):
        assert block().splitlines() == [
            "# opencloudhub-local-dev START (added 2026-03-01 09:30:00)",
            "172.18.0.100 argocd.internal.opencloudhub.org",
            "172.18.0.100 api.opencloudhub.org",
            "# opencloudhub-local-dev END",
        ]

    def test_replace_appends_and_keeps_other_lines(self):
        updated = replace_managed_block(ORIGINAL, block())

        assert updated.startswith(ORIGINAL)
        assert updated.endswith(block())

    def test_replace_twice_leaves_one_block(self):
        once = replace_managed_block(ORIGINAL, block("172.18.0.100"))
        twice = replace_managed_block(once, block("172.18.0.200"))

        assert twice.count("START") == 1
        assert "172.18.0.100" not in twice
        assert "172.18.0.200 api.opencloudhub.org" in twice

    def test_strip_restores_original(self):
        middle = ORIGINAL + block() + "192.168.1.1 router\n"

        assert strip_managed_block(middle) == ORIGINAL + "192.168.1.1 router\n"

    def test_file_without_trailing_newline(self):
        assert replace_managed_block("127.0.0.1 localhost", block()).startswith("127.0.0.1 localhost\n# ")

    def test_exposed_hostnames_use_domain(self):
        hostnames = exposed_hostnames(("grafana.internal", "api"), "example.org")

        assert hostnames == ["grafana.internal.example.org", "api.example.org"]

    def test_clean_hosts_file(self, tmp_path):
        hosts = tmp_path / "hosts"
        hosts.write_text(ORIGINAL + block())

        assert clean_hosts_file(hosts)
        assert hosts.read_text() == ORIGINAL
        assert not clean_hosts_file(hosts)

    def test_clean_missing_hosts_file(self, tmp_path):
        assert not clean_hosts_file(tmp_path / "hosts")


class TestTunnelCommand:
    def test_kind_uses_cloud_provider_kind(self):
        assert tunnel_command(ClusterConfig(provider="kind")) == ["cloud-provider-kind"]

    def test_minikube_runs_under_sudo_with_user_paths(self):
        cfg = ClusterConfig(provider="minikube", cluster_name="dev")

        command = tunnel_command(cfg, {"MINIKUBE_HOME": "/home/me/.minikube", "KUBECONFIG": "/home/me/.kube/config"})

        assert command == [
            "sudo", "MINIKUBE_HOME=/home/me/.minikube", "KUBECONFIG=/home/me/.kube/config",
            "minikube", "tunnel", "-p", "dev",
        ]


def network_context(sleep):
    cluster_cfg, vault_cfg, bootstrap_cfg, options = resolve_config()
    ctx = build_context(cluster_cfg, vault_cfg, bootstrap_cfg, options)
    return dataclasses.replace(ctx, waiter=ConditionWaiter(sleep=sleep))


class TestGatewayIp:
    def test_waits_until_ip_is_assigned(self, monkeypatch, sleep):
        answers = iter(["", "", "172.18.0.100"])
        monkeypatch.setattr(network, "read_gateway_ip", lambda cfg: next(answers))
        ctx = network_context(sleep)

        assert network.wait_for_gateway_ip(ctx) == "172.18.0.100"
        assert ctx.state.gateway_ip == "172.18.0.100"
        assert len(sleep.calls) == 2

    def test_no_ip_within_budget_times_out(self, monkeypatch, sleep):
        monkeypatch.setattr(network, "read_gateway_ip", lambda cfg: "")
        ctx = network_context(sleep)

        with pytest.raises(WaitTimeoutError):
            network.wait_for_gateway_ip(ctx)
        assert ctx.state.gateway_ip == ""
        assert sleep.total == ctx.bootstrap_cfg.gateway_ip_timeout


class TestUpdateHostsFile:
    def test_writes_block_for_every_exposed_hostname(self, tmp_path, sleep):
        hosts = tmp_path / "hosts"
        hosts.write_text(ORIGINAL)
        ctx = network_context(sleep)
        ctx.state.gateway_ip = "172.18.0.100"

        network.update_hosts_file(ctx, hosts)

        content = hosts.read_text()
        assert content.startswith(ORIGINAL)
        for hostname in exposed_hostnames():
            assert f"172.18.0.100 {hostname}\n" in content

    def test_rerun_with_new_ip_replaces_block(self, tmp_path, sleep):
        hosts = tmp_path / "hosts"
        hosts.write_text(ORIGINAL)
        ctx = network_context(sleep)
        ctx.state.gateway_ip = "172.18.0.100"
        network.update_hosts_file(ctx, hosts)
        ctx.state.gateway_ip = "172.18.0.200"

        network.update_hosts_file(ctx, hosts)

        content = hosts.read_text()
        assert content.count("START") == 1
        assert "172.18.0.100" not in content
        assert strip_managed_block(content) == ORIGINAL

    def test_without_gateway_ip_file_is_untouched(self, tmp_path, sleep):
        hosts = tmp_path / "hosts"
        hosts.write_text(ORIGINAL)

        network.update_hosts_file(network_context(sleep), hosts)

        assert hosts.read_text() == ORIGINAL
