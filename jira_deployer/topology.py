"""
Cluster Topology

Classifies the machines of a network stack into cluster roles by their tags.
"""

import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar

from .cloud.base import Machine
from .errors import ConfigurationError

T = TypeVar("T")


class Role(Enum):
    """A machine's role, as stamped on it by the stack template"""
    JIRA_NODE = "jpt-jira"
    DATABASE = "jpt-database"
    SHARED_HOME = "jpt-shared-home"

    @property
    def tag(self) -> Tuple[str, str]:
        return (self.value, "true")

    def matches(self, machine: Machine) -> bool:
        return machine.has_tag(*self.tag)


@dataclass(frozen=True)
class ClusterTopology:
    # Address-sorted
    nodes: Tuple[Machine, ...]
    database: Machine
    shared_home: Optional[Machine] = None

    def bind(self, configs: Sequence[T]) -> List[Tuple[T, Machine]]:
        """Pair configs with node machines by position"""
        if len(configs) != len(self.nodes):
            raise ConfigurationError(
                f"{len(configs)} node configs cannot be bound to {len(self.nodes)} machines"
            )
        return list(zip(configs, self.nodes))


def _address_key(machine: Machine):
    try:
        private = (0, int(ipaddress.ip_address(machine.private_address)), machine.private_address)
    except ValueError:
        private = (1, 0, machine.private_address)
    return private, machine.public_address


def _single(machines: List[Machine], role: Role) -> Machine:
    if len(machines) != 1:
        raise ConfigurationError(
            f"Expected exactly 1 machine with role {role.value}, found {len(machines)}"
        )
    return machines[0]


def resolve_topology(
    machines: Iterable[Machine],
    node_count: int,
    require_shared_home: bool = True,
) -> ClusterTopology:
    """
    Resolve roles from tags.

    Args:
        machines: Everything the network stack contains, in any order
        node_count: Number of configured Jira nodes
        require_shared_home: Whether a shared-home machine must exist

    Returns:
        The topology, with node machines sorted by private address

    Raises:
        ConfigurationError: if a role matches the wrong number of machines
    """
    machines = list(machines)
    nodes = sorted((m for m in machines if Role.JIRA_NODE.matches(m)), key=_address_key)
    if len(nodes) != node_count:
        raise ConfigurationError(
            f"Expected {node_count} machines with role {Role.JIRA_NODE.value}, found {len(nodes)}"
        )
    database = _single([m for m in machines if Role.DATABASE.matches(m)], Role.DATABASE)
    shared_home = None
    if require_shared_home:
        shared_home = _single([m for m in machines if Role.SHARED_HOME.matches(m)], Role.SHARED_HOME)
    return ClusterTopology(nodes=tuple(nodes), database=database, shared_home=shared_home)
