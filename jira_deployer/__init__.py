"""
Jira Deployer

Provisions multi-node Jira clusters on AWS for performance testing: a
CloudFormation network stack, a load balancer, an NFS shared home, a MySQL
database and N Jira nodes, started and health-gated in dependency order.

Usage:
    from jira_deployer import JiraDeployer

    deployer = JiraDeployer.from_config_file("jira.json")

    with deployer.auto_cleanup():
        deployer.provision()
        ...
        deployer.gather_results(Path("results"))
    deployer.release()
"""

__version__ = "0.1.0"

# Core types
from .configs import (
    ClusterMode,
    DatabaseDriver,
    Investment,
    NodeConfig,
    ProvisioningConfig,
    SshKey,
    ConfigLoader,
)

# Errors
from .errors import (
    DeployerError,
    ConfigurationError,
    ProvisioningError,
    TransientRemoteError,
    HealthGateTimeout,
    OrchestrationError,
)

# Orchestration
from .orchestrator import (
    Cluster,
    ClusterOrchestrator,
    ClusterState,
    ProvisionedCluster,
)
from .resources import Resource, DependentResources, compose
from .results import gather_results
from .topology import ClusterTopology, Role, resolve_topology

# Entry point
from .main import JiraDeployer

__all__ = [
    # Version
    "__version__",
    # Types
    "ClusterMode",
    "DatabaseDriver",
    "Investment",
    "NodeConfig",
    "ProvisioningConfig",
    "SshKey",
    "ConfigLoader",
    # Errors
    "DeployerError",
    "ConfigurationError",
    "ProvisioningError",
    "TransientRemoteError",
    "HealthGateTimeout",
    "OrchestrationError",
    # Orchestration
    "Cluster",
    "ClusterOrchestrator",
    "ClusterState",
    "ProvisionedCluster",
    "Resource",
    "DependentResources",
    "compose",
    "gather_results",
    "ClusterTopology",
    "Role",
    "resolve_topology",
    # Main
    "JiraDeployer",
]
