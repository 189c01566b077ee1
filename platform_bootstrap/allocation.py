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

"""Resource allocation policy: cluster topology and node role to CPU/memory limits."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from platform_bootstrap import logger
from platform_bootstrap.constants import CLUSTER_TYPE_BY_DESCRIPTOR
from platform_bootstrap.errors import PreflightError


class ClusterType(str, Enum):
    SINGLE_NODE = "single_node"
    MULTI_NODE = "multi_node"


class NodeRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    APPLICATION = "application"
    GPU_WORKER = "gpu-worker"
    UNKNOWN = "unknown"
    FALLBACK = "fallback"


# ============================================================================
# Memory quantities
# ============================================================================

_MEMORY_RE = re.compile(r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[bkmgt]?)(?:i?b?)$", re.IGNORECASE)
_GIB_PER_UNIT = {
    "": 1 / 1024**3,
    "b": 1 / 1024**3,
    "k": 1 / 1024**2,
    "m": 1 / 1024,
    "g": 1.0,
    "t": 1024.0,
}


def parse_memory_gib(value: str) -> float:
    """Parse a Docker-style memory quantity (``24g``, ``512m``, ``8Gi``) into GiB.

    Args:
        value: Memory string with an optional binary unit suffix; bare numbers are bytes.

    Returns:
        The quantity in GiB.

    Raises:
        ValueError: If the string is not a memory quantity.
    """
    match = _MEMORY_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid memory quantity: {value!r}")
    return float(match.group("value")) * _GIB_PER_UNIT[match.group("unit").lower()]


def format_memory_gib(gib: float) -> str:
    """Format GiB as the shortest Docker memory string that parses back to ``gib``."""
    if float(gib).is_integer():
        return f"{int(gib)}g"
    mib = gib * 1024
    if float(mib).is_integer():
        return f"{int(mib)}m"
    return f"{round(mib * 1024)}k"


# ============================================================================
# Allocation table
# ============================================================================

class NodeLimits(BaseModel):
    """CPU and memory limits for one node.

    Attributes:
        cpu: Number of CPUs (fractional allowed).
        memory: Memory quantity with unit suffix, e.g. ``24g``.
    """

    model_config = ConfigDict(frozen=True)

    cpu: float = Field(gt=0)
    memory: str

    @field_validator("memory")
    @classmethod
    def _validate_memory(cls, value: str) -> str:
        if parse_memory_gib(value) <= 0:
            raise ValueError("memory must be positive")
        return value

    @property
    def memory_gib(self) -> float:
        return parse_memory_gib(self.memory)


class AllocationTable(BaseModel):
    """Declarative ``cluster_type -> node_role -> limits`` table.

    A ``default`` role key is accepted as an alias of ``fallback``.
    """

    model_config = ConfigDict(frozen=True)

    allocation_strategies: dict[ClusterType, dict[str, NodeLimits]] = Field(default_factory=dict)

    @field_validator("allocation_strategies")
    @classmethod
    def _normalize_roles(cls, strategies: dict[ClusterType, dict[str, NodeLimits]]) -> dict:
        normalized: dict[ClusterType, dict[str, NodeLimits]] = {}
        for cluster_type, roles in strategies.items():
            entries = {("fallback" if role == "default" else role): limits for role, limits in roles.items()}
            normalized[cluster_type] = entries
        return normalized

    def lookup(self, cluster_type: ClusterType, role: str) -> NodeLimits | None:
        return self.allocation_strategies.get(cluster_type, {}).get(role)


LAST_RESORT_LIMITS = NodeLimits(cpu=2, memory="6g")

BUILTIN_ALLOCATION_TABLE = AllocationTable(allocation_strategies={
    ClusterType.SINGLE_NODE: {NodeRole.FALLBACK.value: NodeLimits(cpu=8, memory="24g")},
    ClusterType.MULTI_NODE: {NodeRole.FALLBACK.value: NodeLimits(cpu=2, memory="6g")},
})


def load_allocation_table(*candidates: Path | None) -> AllocationTable:
    """Load the first existing allocation table, else the built-in one.

    Candidates are evaluated once, in order; ``None`` entries are ignored.

    Args:
        *candidates: Paths to YAML allocation tables in precedence order.

    Returns:
        The validated allocation table.

    Raises:
        PreflightError: If an existing file is not a valid allocation table.
    """
    for path in candidates:
        if path is None or not path.is_file():
            continue
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
            table = AllocationTable.model_validate(raw)
        except (yaml.YAMLError, pydantic.ValidationError) as err:
            raise PreflightError(f"Invalid resource limits config {path}", [str(err)]) from err
        logger.info("Loaded resource allocation table from %s", path)
        return table

    logger.warning("No resource limits config found; using built-in allocation table")
    return BUILTIN_ALLOCATION_TABLE


# ============================================================================
# Classification
# ============================================================================

def classify_cluster_type(descriptor: str | Path) -> ClusterType:
    """Map a topology descriptor filename to a cluster type; unknown means single_node."""
    name = Path(descriptor).name
    return ClusterType(CLUSTER_TYPE_BY_DESCRIPTOR.get(name, ClusterType.SINGLE_NODE.value))


@dataclass(frozen=True)
class NodeIdentity:
    """A cluster node as seen from the host.

    Attributes:
        display_name: Container or machine name (e.g. ``kind-worker2``).
        node_name: Kubernetes node name, or None if the node is unreachable.
    """

    display_name: str
    node_name: str | None = None


RoleStrategy = Callable[[NodeIdentity], "NodeRole | None"]

NAME_ROLE_PATTERNS: tuple[tuple[str, NodeRole], ...] = (
    ("control-plane", NodeRole.CONTROL_PLANE),
    ("gpu", NodeRole.GPU_WORKER),
    ("worker", NodeRole.APPLICATION),
)


def role_from_label(value: str | None) -> NodeRole | None:
    """Interpret a node-type label value; unrecognized values yield None."""
    if not value:
        return None
    try:
        return NodeRole(value.strip())
    except ValueError:
        return None


def label_strategy(read_label: Callable[[str], str | None]) -> RoleStrategy:
    """Build a strategy that reads the live node-type label.

    Args:
        read_label: Returns the label value for a Kubernetes node name, or None.
    """

    def _strategy(node: NodeIdentity) -> NodeRole | None:
        if not node.node_name:
            return None
        return role_from_label(read_label(node.node_name))

    return _strategy


def name_pattern_strategy(node: NodeIdentity) -> NodeRole | None:
    for pattern, role in NAME_ROLE_PATTERNS:
        if pattern in node.display_name:
            return role
    return None


class NodeRoleClassifier:
    """Applies role strategies in order; the first non-None answer wins."""

    def __init__(self, strategies: Sequence[RoleStrategy]) -> None:
        self._strategies = list(strategies)

    def classify(self, node: NodeIdentity) -> NodeRole:
        for strategy in self._strategies:
            role = strategy(node)
            if role is not None:
                return role
        return NodeRole.UNKNOWN


# ============================================================================
# Policy
# ============================================================================

@dataclass(frozen=True)
class NodeAllocation:
    node: NodeIdentity
    role: NodeRole
    limits: NodeLimits


class ResourceAllocationPolicy:
    """Resolves per-node limits from an allocation table.

    Lookup order: exact ``(cluster_type, role)``, then
    ``(cluster_type, fallback)``, then LAST_RESORT_LIMITS.
    """

    def __init__(self, table: AllocationTable) -> None:
        self._table = table

    def limits_for(self, cluster_type: ClusterType, role: NodeRole | str) -> NodeLimits:
        role_key = role.value if isinstance(role, NodeRole) else str(role)
        for key in (role_key, NodeRole.FALLBACK.value):
            limits = self._table.lookup(cluster_type, key)
            if limits is not None:
                return limits
        return LAST_RESORT_LIMITS

    def plan(
        self,
        nodes: Iterable[NodeIdentity],
        cluster_type: ClusterType,
        classifier: NodeRoleClassifier,
    ) -> list[NodeAllocation]:
        """Classify each node and attach its limits."""
        allocations = []
        for node in nodes:
            role = classifier.classify(node)
            allocations.append(NodeAllocation(node, role, self.limits_for(cluster_type, role)))
        return allocations


@dataclass(frozen=True)
class AllocationSummary:
    """Host capacity versus the sum of assigned node limits."""

    cluster_type: ClusterType
    host_cpus: float
    host_memory_gib: float
    allocations: tuple[NodeAllocation, ...]

    @property
    def total_cpu(self) -> float:
        return sum(a.limits.cpu for a in self.allocations)

    @property
    def total_memory_gib(self) -> float:
        return sum(a.limits.memory_gib for a in self.allocations)

    @property
    def cpu_percent(self) -> float:
        return 100 * self.total_cpu / self.host_cpus if self.host_cpus else 0.0

    @property
    def memory_percent(self) -> float:
        return 100 * self.total_memory_gib / self.host_memory_gib if self.host_memory_gib else 0.0
