"""
Configuration Module

Provides configuration types and loading utilities.
"""

from .types import (
    ClusterMode,
    DatabaseDriver,
    Investment,
    JvmArgs,
    LaunchTimeouts,
    RemoteJmx,
    JmxClient,
    Diagnostics,
    NodeConfig,
    SshKey,
    ProvisioningConfig,
)

from .loader import ConfigLoader

__all__ = [
    # Enums
    "ClusterMode",
    "DatabaseDriver",
    # Config types
    "Investment",
    "JvmArgs",
    "LaunchTimeouts",
    "RemoteJmx",
    "JmxClient",
    "Diagnostics",
    "NodeConfig",
    "SshKey",
    "ProvisioningConfig",
    # Utilities
    "ConfigLoader",
]
