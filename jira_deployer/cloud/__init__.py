"""
Cloud Module

Provides collaborator interfaces and their AWS implementations.
"""

from .base import (
    Machine,
    TopologySpec,
    ProvisionedNetwork,
    NetworkProvisioner,
    CloudProvider,
    LoadBalancer,
    ProvisionedLoadBalancer,
    LoadBalancerFormula,
    Storage,
    Database,
    ApplicationStorage,
    JiraHomeSource,
    JavaDevelopmentKit,
    Computer,
    ElasticComputer,
    EphemeralComputer,
)

from .aws_provider import (
    AwsProvider,
    CloudFormationNetworkProvisioner,
    CloudFormationStack,
    ElasticLoadBalancerFormula,
    S3Storage,
)
from .client_factory import AwsClientFactory

__all__ = [
    # Interfaces
    "Machine",
    "TopologySpec",
    "ProvisionedNetwork",
    "NetworkProvisioner",
    "CloudProvider",
    "LoadBalancer",
    "ProvisionedLoadBalancer",
    "LoadBalancerFormula",
    "Storage",
    "Database",
    "ApplicationStorage",
    "JiraHomeSource",
    "JavaDevelopmentKit",
    "Computer",
    "ElasticComputer",
    "EphemeralComputer",
    # AWS
    "AwsProvider",
    "CloudFormationNetworkProvisioner",
    "CloudFormationStack",
    "ElasticLoadBalancerFormula",
    "S3Storage",
    "AwsClientFactory",
]
