"""
Jira Node Management Module

Installs Jira on single machines and drives node start-up.
"""

from .formula import NodeFormula, NodeRole, RoleParameters
from .nodes import StoppedNode, StartedNode

__all__ = [
    "NodeFormula",
    "NodeRole",
    "RoleParameters",
    "StoppedNode",
    "StartedNode",
]
