"""
Main Deployer Module

Wires a :class:`ProvisioningConfig` to the AWS implementations and exposes
the cluster lifecycle: provision, gather results, release.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from .artifacts import ArtifactPreparer
from .cloud.aws_provider import AwsProvider
from .cloud.base import EphemeralComputer, ElasticComputer, HttpApplicationStorage, HttpJiraHomeSource
from .configs import ConfigLoader, ProvisioningConfig, SshKey
from .database import DockerMySqlDatabase
from .errors import ConfigurationError, OrchestrationError
from .orchestrator import Cluster, ClusterOrchestrator, ProvisionedCluster
from .resources import Resource, completed
from .utils.logger import configure_logger
from .utils.remote import RemoteExecutor


class JiraDeployer:
    """
    Provisions one Jira cluster described by a config.

    Usage:
        deployer = JiraDeployer.from_config_file("jira.json")

        with deployer.auto_cleanup():
            deployer.provision()
            ...
            deployer.gather_results(Path("results"))
    """

    def __init__(self, config: ProvisioningConfig, provider: Optional[AwsProvider] = None, log_file: Optional[Path] = None):
        if not config.key_name or not config.key_path:
            raise ConfigurationError("key_name and key_path are required")
        self.config = config
        configure_logger(config.log_level, log_file or Path("./logs") / f"{config.nonce}.log")
        self.provider = provider or AwsProvider.new(config.region, config.stack_creation_timeout)
        self.plugins_transport = self.provider.storage(config.plugins_bucket, f"{config.nonce}/jira-storage")
        self.results_transport = self.provider.storage(config.results_bucket, f"{config.nonce}/results")
        self.cluster: Optional[Cluster] = None
        self.resource: Optional[Resource] = None

    def orchestrator(self) -> ClusterOrchestrator:
        config = self.config
        if config.ephemeral_drive:
            computer = EphemeralComputer(instance_type=config.instance_type)
        else:
            computer = ElasticComputer(instance_type=config.instance_type)
        return ClusterOrchestrator(
            executor=RemoteExecutor(connectivity_patience=config.connectivity_patience),
            application=HttpApplicationStorage(config.jira_archive_uri),
            jira_home_source=HttpJiraHomeSource(config.jira_home_uri),
            database=DockerMySqlDatabase(config.database_uri),
            load_balancer_formula=self.provider.load_balancer_formula(config.nonce),
            template=config.template_path,
            nonce=config.nonce,
            mode=config.mode,
            computer=computer,
            database_driver=config.database_driver,
            artifacts=ArtifactPreparer(apps=config.apps, collectd_jars=config.collectd_jars),
            health_gate_timeout=config.health_gate_timeout,
            ssh_user=config.ssh_user,
        )

    def provision(self) -> ProvisionedCluster:
        key = SshKey(remote_name=self.config.key_name, file=self.config.key_path)
        try:
            provisioned = self.orchestrator().orchestrate(
                configs=self.config.nodes,
                investment=self.config.investment,
                plugins_transport=self.plugins_transport,
                results_transport=self.results_transport,
                key_future=completed(key),
                role_profile=self.config.role_profile,
                provider=self.provider,
            )
        except OrchestrationError as e:
            # Keep what was created so release() can clean it up
            self.resource = e.resource
            raise
        self.cluster = provisioned.cluster
        self.resource = provisioned.resource
        return provisioned

    def gather_results(self, target: Path) -> Path:
        if self.cluster is None:
            raise ConfigurationError("No live cluster to gather results from")
        return self.cluster.gather_results(self.results_transport, target)

    def release(self, timeout: Optional[float] = None) -> None:
        if self.resource is None:
            return
        logger.info("Releasing cluster resources...")
        self.resource.release().result(timeout=timeout)
        logger.success("Cluster resources released")

    @contextmanager
    def auto_cleanup(self) -> Iterator["JiraDeployer"]:
        """Release everything created if the wrapped block fails"""
        try:
            yield self
        except Exception as e:
            logger.error(f"Error during deployment: {e}")
            try:
                self.release()
            except Exception as release_error:
                logger.error(f"Cleanup failed: {release_error}")
            raise

    @classmethod
    def from_config_file(cls, config_path: str) -> "JiraDeployer":
        return cls(ConfigLoader.load_from_file(config_path))
