"""Tests for the resource allocation policy and its loaders."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from platform_bootstrap.allocation import (
    BUILTIN_ALLOCATION_TABLE,
    LAST_RESORT_LIMITS,
    AllocationSummary,
    AllocationTable,
    ClusterType,
    NodeAllocation,
    NodeIdentity,
    NodeLimits,
    NodeRole,
    NodeRoleClassifier,
    ResourceAllocationPolicy,
    classify_cluster_type,
    format_memory_gib,
    label_strategy,
    load_allocation_table,
    name_pattern_strategy,
    parse_memory_gib,
)
from platform_bootstrap.constants import DEFAULT_RESOURCE_LIMITS_FILE
from platform_bootstrap.errors import PreflightError


def table(**strategies) -> AllocationTable:
    return AllocationTable.model_validate({"allocation_strategies": strategies})


class TestMemoryQuantities:
    @pytest.mark.parametrize(
        ("text", "gib"),
        [("24g", 24), ("6G", 6), ("512m", 0.5), ("8Gi", 8), ("1t", 1024), ("1048576k", 1), (str(2 * 1024**3), 2)],
    )
    def test_parse(self, text, gib):
        assert parse_memory_gib(text) == gib

    @pytest.mark.parametrize("text", ["", "lots", "g", "-1g", "1.2.3g"])
    def test_parse_rejects_garbage(self, text):
        with pytest.raises(ValueError):
            parse_memory_gib(text)

    @pytest.mark.parametrize(("gib", "text"), [(24, "24g"), (0.5, "512m"), (30.5, "31232m")])
    def test_format(self, gib, text):
        assert format_memory_gib(gib) == text

    @given(mib=st.integers(min_value=1, max_value=4 * 1024 * 1024))
    def test_format_parses_back(self, mib):
        gib = mib / 1024
        assert parse_memory_gib(format_memory_gib(gib)) == pytest.approx(gib)


class TestAllocationTable:
    def test_default_key_is_alias_of_fallback(self):
        t = table(single_node={"default": {"cpu": 8, "memory": "24g"}})

        assert t.lookup(ClusterType.SINGLE_NODE, "fallback") == NodeLimits(cpu=8, memory="24g")
        assert t.lookup(ClusterType.SINGLE_NODE, "default") is None

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError):
            table(multi_node={"fallback": {"cpu": 0, "memory": "6g"}})
        with pytest.raises(ValueError):
            table(multi_node={"fallback": {"cpu": 2, "memory": "six"}})

    def test_load_first_existing_candidate(self, tmp_path):
        path = tmp_path / "limits.yaml"
        path.write_text("allocation_strategies:\n  multi_node:\n    gpu-worker: {cpu: 12, memory: 48g}\n")

        loaded = load_allocation_table(None, tmp_path / "missing.yaml", path, DEFAULT_RESOURCE_LIMITS_FILE)

        assert loaded.lookup(ClusterType.MULTI_NODE, "gpu-worker") == NodeLimits(cpu=12, memory="48g")

    def test_load_without_any_file_uses_builtin_table(self, tmp_path, caplog):
        loaded = load_allocation_table(tmp_path / "missing.yaml")

        assert loaded is BUILTIN_ALLOCATION_TABLE
        assert "built-in allocation table" in caplog.text

    @pytest.mark.parametrize(
        "content",
        [
            "allocation_strategies: [unclosed",
            "allocation_strategies:\n  multi_node:\n    fallback: {cpu: two, memory: 6g}\n",
            "allocation_strategies:\n  huge_cluster:\n    fallback: {cpu: 2, memory: 6g}\n",
            "- just\n- a list\n",
        ],
    )
    def test_invalid_file_is_a_preflight_error(self, tmp_path, content):
        path = tmp_path / "limits.yaml"
        path.write_text(content)

        with pytest.raises(PreflightError):
            load_allocation_table(path)

    def test_packaged_table_loads(self):
        policy = ResourceAllocationPolicy(load_allocation_table(DEFAULT_RESOURCE_LIMITS_FILE))

        assert policy.limits_for(ClusterType.SINGLE_NODE, NodeRole.APPLICATION) == NodeLimits(cpu=8, memory="24g")
        assert policy.limits_for(ClusterType.MULTI_NODE, NodeRole.UNKNOWN) == NodeLimits(cpu=2, memory="6g")


class TestResourceAllocationPolicy:
    def test_single_node_default_applies_to_every_role(self):
        policy = ResourceAllocationPolicy(table(single_node={"default": {"cpu": 8, "memory": "24g"}}))

        for role in NodeRole:
            assert policy.limits_for(ClusterType.SINGLE_NODE, role) == NodeLimits(cpu=8, memory="24g")

    def test_missing_role_falls_back_within_cluster_type(self):
        policy = ResourceAllocationPolicy(table(multi_node={
            "control-plane": {"cpu": 4, "memory": "8g"},
            "fallback": {"cpu": 2, "memory": "6g"},
        }))

        assert policy.limits_for(ClusterType.MULTI_NODE, NodeRole.CONTROL_PLANE) == NodeLimits(cpu=4, memory="8g")
        assert policy.limits_for(ClusterType.MULTI_NODE, NodeRole.GPU_WORKER) == NodeLimits(cpu=2, memory="6g")

    def test_empty_table_uses_last_resort(self):
        policy = ResourceAllocationPolicy(AllocationTable())

        assert policy.limits_for(ClusterType.MULTI_NODE, NodeRole.GPU_WORKER) is LAST_RESORT_LIMITS

    def test_plan_classifies_and_assigns(self):
        policy = ResourceAllocationPolicy(load_allocation_table(DEFAULT_RESOURCE_LIMITS_FILE))
        nodes = [NodeIdentity("ml-control-plane"), NodeIdentity("ml-gpu-worker"), NodeIdentity("ml-worker")]

        plan = policy.plan(nodes, ClusterType.MULTI_NODE, NodeRoleClassifier([name_pattern_strategy]))

        assert [a.role for a in plan] == [NodeRole.CONTROL_PLANE, NodeRole.GPU_WORKER, NodeRole.APPLICATION]
        assert plan[0].limits == NodeLimits(cpu=4, memory="8g")

    @given(
        cluster_type=st.sampled_from(list(ClusterType)),
        role=st.one_of(st.sampled_from(list(NodeRole)), st.text(max_size=20)),
        entries=st.dictionaries(
            st.sampled_from([r.value for r in NodeRole] + ["default"]),
            st.builds(NodeLimits, cpu=st.integers(1, 64), memory=st.integers(1, 256).map(lambda g: f"{g}g")),
            max_size=4,
        ),
    )
    def test_limits_for_is_total(self, cluster_type, role, entries):
        policy = ResourceAllocationPolicy(AllocationTable(allocation_strategies={cluster_type: entries}))

        limits = policy.limits_for(cluster_type, role)

        assert limits.cpu > 0
        assert limits.memory_gib > 0


class TestClassification:
    @pytest.mark.parametrize(
        ("descriptor", "expected"),
        [
            ("basic.yaml", ClusterType.SINGLE_NODE),
            ("minikube", ClusterType.SINGLE_NODE),
            ("multinode-gpu.yaml", ClusterType.MULTI_NODE),
            ("kind/multinode-gpu.yaml", ClusterType.MULTI_NODE),
            ("something-else.yaml", ClusterType.SINGLE_NODE),
        ],
    )
    def test_cluster_type_from_descriptor(self, descriptor, expected):
        assert classify_cluster_type(descriptor) is expected

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("kind-control-plane", NodeRole.CONTROL_PLANE),
            ("kind-gpu-worker", NodeRole.GPU_WORKER),
            ("kind-worker2", NodeRole.APPLICATION),
            ("kind-node", None),
        ],
    )
    def test_name_pattern_strategy(self, name, expected):
        assert name_pattern_strategy(NodeIdentity(name)) is expected

    def test_label_strategy_reads_by_node_name(self):
        labels = {"worker-a": "gpu-worker", "worker-b": "bogus"}
        strategy = label_strategy(labels.get)

        assert strategy(NodeIdentity("kind-worker", "worker-a")) is NodeRole.GPU_WORKER
        assert strategy(NodeIdentity("kind-worker", "worker-b")) is None
        assert strategy(NodeIdentity("kind-worker")) is None

    def test_label_wins_over_name(self):
        classifier = NodeRoleClassifier([label_strategy(lambda _: "application"), name_pattern_strategy])

        assert classifier.classify(NodeIdentity("kind-gpu-worker", "kind-gpu-worker")) is NodeRole.APPLICATION

    def test_unmatched_node_is_unknown(self):
        classifier = NodeRoleClassifier([label_strategy(lambda _: None), name_pattern_strategy])

        assert classifier.classify(NodeIdentity("mystery", "mystery")) is NodeRole.UNKNOWN


class TestAllocationSummary:
    def test_totals_and_percentages(self):
        allocations = (
            NodeAllocation(NodeIdentity("a"), NodeRole.CONTROL_PLANE, NodeLimits(cpu=4, memory="8g")),
            NodeAllocation(NodeIdentity("b"), NodeRole.GPU_WORKER, NodeLimits(cpu=4, memory="24g")),
        )
        summary = AllocationSummary(ClusterType.MULTI_NODE, host_cpus=16, host_memory_gib=64, allocations=allocations)

        assert summary.total_cpu == 8
        assert summary.total_memory_gib == 32
        assert summary.cpu_percent == 50
        assert summary.memory_percent == 50

    def test_unknown_host_capacity_reports_zero_percent(self):
        summary = AllocationSummary(ClusterType.SINGLE_NODE, 0, 0, ())

        assert summary.cpu_percent == 0
        assert summary.memory_percent == 0
