"""
Node Provisioning

:class:`NodeFormula` installs and configures Jira on one machine and returns
a :class:`StoppedNode`. Role-specific steps are decoration functions chosen
by :class:`NodeRole`, applied after the common installation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..artifacts import JiraStoragePaths, collectd_config_name
from ..cloud.base import (
    ApplicationStorage,
    Computer,
    ElasticComputer,
    JavaDevelopmentKit,
    JiraHomeSource,
    Machine,
    OpenJdk,
    Storage,
    Ubuntu,
)
from ..configs import DatabaseDriver, NodeConfig
from ..errors import ConfigurationError
from ..home.shared_home import SHARED_HOME_PATH, SharedHome
from ..utils import actions
from ..utils.aws_cli import AwsCli
from ..utils.remote import RemoteExecutor, RemoteSession, RemoteTarget
from ..utils.timing import timed
from .dbconfig import replace_dbconfig_url
from .drivers import DriverInstaller
from .nodes import StoppedNode
from .setenv import GcLog, SetenvSh

JIRA_STORAGE_DIR = "/tmp/jira-storage"


class NodeRole(Enum):
    STANDALONE = "standalone"
    DATA_CENTER = "data-center"


@dataclass(frozen=True)
class RoleParameters:
    """A node's role plus whatever that role needs"""
    role: NodeRole = NodeRole.STANDALONE
    # Data Center only
    shared_home: Optional[SharedHome] = None

    @classmethod
    def standalone(cls) -> "RoleParameters":
        return cls(role=NodeRole.STANDALONE)

    @classmethod
    def data_center(cls, shared_home: SharedHome) -> "RoleParameters":
        return cls(role=NodeRole.DATA_CENTER, shared_home=shared_home)


@dataclass(frozen=True)
class InstalledNode:
    """What the common installation leaves behind, handed to role decorations"""
    config: NodeConfig
    machine: Machine
    jira_home: str
    unpacked_product: str


Decoration = Callable[[RemoteSession, InstalledNode, RoleParameters], None]


def join_data_center(session: RemoteSession, node: InstalledNode, role: RoleParameters) -> None:
    """Mount the shared home and register the node with the cluster"""
    if role.shared_home is None:
        raise ConfigurationError(f"Data Center node {node.config.name} needs a shared home")
    role.shared_home.mount(session, SHARED_HOME_PATH)
    cluster_properties = "\n".join([
        f"jira.node.id = {node.config.name}",
        f"jira.shared.home = {SHARED_HOME_PATH}",
        f"ehcache.listener.hostName = {node.machine.private_address}",
        "ehcache.listener.port = 40001",
        "ehcache.object.port = 40011",
    ])
    session.write_text(f"{node.jira_home}/cluster.properties", cluster_properties + "\n")


ROLE_DECORATIONS: Dict[NodeRole, List[Decoration]] = {
    NodeRole.STANDALONE: [],
    NodeRole.DATA_CENTER: [join_data_center],
}


class NodeFormula:
    """
    Installs Jira on machines of one cluster.

    Args:
        executor: Opens sessions to the machines
        application: Source of the Jira distribution
        jira_home_source: Source of the Jira home dataset
        plugins_transport: Holds the prepared apps and collectd artifacts
        results_transport: Where started nodes upload their results
        database_ip: Address written into dbconfig.xml
        database_driver: JDBC driver to install
        computer: Hardware profile, prepared before anything else
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        application: ApplicationStorage,
        jira_home_source: JiraHomeSource,
        plugins_transport: Storage,
        results_transport: Storage,
        database_ip: str,
        database_driver: DatabaseDriver = DatabaseDriver.MYSQL,
        computer: Optional[Computer] = None,
        ssh_user: str = "ubuntu",
        key_path: Optional[str] = None,
        jdk: Optional[JavaDevelopmentKit] = None,
        ubuntu: Optional[Ubuntu] = None,
        aws_cli: Optional[AwsCli] = None,
    ):
        self.executor = executor
        self.application = application
        self.jira_home_source = jira_home_source
        self.plugins_transport = plugins_transport
        self.results_transport = results_transport
        self.database_ip = database_ip
        self.driver_installer = DriverInstaller(database_driver)
        self.computer = computer or ElasticComputer()
        self.ssh_user = ssh_user
        self.key_path = key_path
        self.jdk = jdk or OpenJdk()
        self.ubuntu = ubuntu or Ubuntu()
        self.aws_cli = aws_cli or AwsCli()

    def target(self, machine: Machine) -> RemoteTarget:
        return RemoteTarget(address=machine.public_address, user=self.ssh_user, key_path=self.key_path)

    def provision(self, machine: Machine, config: NodeConfig, role: RoleParameters) -> StoppedNode:
        target = self.target(machine)
        logger.info(f"Setting up {config.name} on {target}...")
        with self.executor.connect(target) as session:
            self.computer.set_up(session)
            archive = self.application.download(session, ".")
            with timed(f"download Jira home for {config.name}"):
                jira_home = self.jira_home_source.download(session)
            unpacked_product = self._unpacked_product_name(session, archive)

            replace_dbconfig_url(session, f"{jira_home}/dbconfig.xml", self.database_ip)
            session.run(actions.unpack(archive))
            SetenvSh(unpacked_product).setup(
                session,
                config=config,
                gc_log=GcLog(unpacked_product),
                jira_ip=machine.public_address,
            )
            session.write_text(
                f"{unpacked_product}/atlassian-jira/WEB-INF/classes/jira-application.properties",
                f"jira.home={jira_home}\n",
            )
            session.write_text(f"{jira_home}/jira-config.properties", "jira.autoexport=false\n")
            self.driver_installer.install(session, unpacked_product)

            self._provision_from_jira_storage(session, config, jira_home)

            self.jdk.install(session)
            os_metrics = self.ubuntu.metrics(session)

            installed = InstalledNode(
                config=config,
                machine=machine,
                jira_home=jira_home,
                unpacked_product=unpacked_product,
            )
            for decorate in ROLE_DECORATIONS[role.role]:
                decorate(session, installed, role)

        logger.info(f"{config.name} is set up")
        return StoppedNode(
            name=config.name,
            target=target,
            jira_home=jira_home,
            unpacked_product=unpacked_product,
            os_metrics=os_metrics,
            launch_timeouts=config.launch_timeouts,
            results_transport=self.results_transport,
            executor=self.executor,
        )

    def _unpacked_product_name(self, session: RemoteSession, archive: str) -> str:
        output = session.run(actions.list_archive_root(archive)).output
        return output.strip().split("/")[0]

    def _provision_from_jira_storage(self, session: RemoteSession, config: NodeConfig, jira_home: str) -> None:
        session.run(actions.make_dirs(JIRA_STORAGE_DIR))
        self.aws_cli.download(self.plugins_transport.location, session, target=JIRA_STORAGE_DIR)
        self._install_plugins(session, jira_home)
        self._install_collectd(session, config)

    def _install_plugins(self, session: RemoteSession, jira_home: str) -> None:
        installed_plugins = f"{jira_home}/plugins/installed-plugins"
        session.run(actions.make_dirs(installed_plugins))
        session.run(actions.move_contents(
            f"{JIRA_STORAGE_DIR}/{JiraStoragePaths.APPS}", installed_plugins, tolerate_failure=True,
        ))

    def _install_collectd(self, session: RemoteSession, config: NodeConfig) -> None:
        config_dir = f"{JIRA_STORAGE_DIR}/{JiraStoragePaths.COLLECTD_CONFIGS}"
        if config.diagnostics.remote_jmx.enabled:
            session.run(actions.run(
                "find", config_dir, "-name", "*.conf", "-exec",
                "sed", "-i", f"s/localhost:3333/localhost:{config.diagnostics.remote_jmx.port}/g", "{}", "+",
                tolerate_failure=True,
            ))
        self.ubuntu.install(session, ["collectd"])
        for uri in config.diagnostics.collectd_configs:
            # Configs that failed to download were never uploaded
            session.run(actions.run(
                "mv", f"{config_dir}/{collectd_config_name(uri)}", "/etc/collectd/collectd.conf.d",
                sudo=True,
                tolerate_failure=True,
            ))
        session.run(actions.move_contents(
            f"{JIRA_STORAGE_DIR}/{JiraStoragePaths.COLLECTD_JARS}", "/usr/share/collectd/java",
            sudo=True,
            tolerate_failure=True,
        ))
        session.run(actions.systemctl("restart", "collectd.service"))
