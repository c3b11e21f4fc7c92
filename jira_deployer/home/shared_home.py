"""
Shared Home

Data Center nodes share attachments, index snapshots and installed apps
through an NFS export on a dedicated machine.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..artifacts import JiraStoragePaths
from ..cloud.base import JiraHomeSource, Storage
from ..utils import actions
from ..utils.aws_cli import AwsCli
from ..utils.remote import RemoteExecutor, RemoteLocation, RemoteSession, RemoteTarget
from ..utils.timing import timed

SHARED_HOME_PATH = "/home/ubuntu/jira-shared-home"
# Parts of a Jira home that live in the shared home
SHARED_DIRECTORIES = ("data", "plugins", "import", "export")


@dataclass(frozen=True)
class SharedHome:
    """An exported shared home, as seen by the nodes"""
    server_ip: str
    remote_path: str
    location: RemoteLocation

    def mount(self, session: RemoteSession, local_path: str = SHARED_HOME_PATH) -> None:
        session.run(actions.apt_install(["nfs-common"]))
        session.run(actions.make_dirs(local_path))
        session.run(actions.run(
            "mount", "-o", "soft,intr,rsize=8192,wsize=8192",
            f"{self.server_ip}:{self.remote_path}", local_path,
            sudo=True,
        ))
        session.run(actions.run("chown", "ubuntu:ubuntu", local_path, sudo=True))


class SharedHomeFormula:
    """
    Args:
        executor: Opens sessions to the shared-home machine
        jira_home_source: Dataset to seed the shared home from
        plugins_transport: Where the prepared apps were uploaded
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        jira_home_source: JiraHomeSource,
        plugins_transport: Storage,
        aws_cli: Optional[AwsCli] = None,
    ):
        self.executor = executor
        self.jira_home_source = jira_home_source
        self.plugins_transport = plugins_transport
        self.aws_cli = aws_cli or AwsCli()

    def provision(self, target: RemoteTarget, private_ip: str) -> SharedHome:
        logger.info(f"Setting up shared home on {target}...")
        with self.executor.connect(target) as session:
            with timed("download Jira home for shared home"):
                jira_home = self.jira_home_source.download(session)
            session.run(actions.make_dirs(SHARED_HOME_PATH))
            for directory in SHARED_DIRECTORIES:
                session.run(actions.run(
                    "cp", "-r", f"{jira_home}/{directory}", SHARED_HOME_PATH,
                    tolerate_failure=True,
                ))

            storage_dir = "/tmp/jira-storage"
            session.run(actions.make_dirs(storage_dir))
            self.aws_cli.download(self.plugins_transport.location, session, target=storage_dir)
            installed_plugins = f"{SHARED_HOME_PATH}/plugins/installed-plugins"
            session.run(actions.make_dirs(installed_plugins))
            session.run(actions.move_contents(
                f"{storage_dir}/{JiraStoragePaths.APPS}", installed_plugins, tolerate_failure=True,
            ))

            session.run(actions.apt_install(["nfs-kernel-server"]))
            export = f"{SHARED_HOME_PATH} *(rw,sync,no_subtree_check,no_root_squash)"
            session.write_text("/tmp/jira-exports", export + "\n")
            session.run(actions.run("cp", "/tmp/jira-exports", "/etc/exports", sudo=True))
            session.run(actions.systemctl("restart", "nfs-kernel-server"))
        logger.info(f"Shared home exported from {private_ip}:{SHARED_HOME_PATH}")
        return SharedHome(
            server_ip=private_ip,
            remote_path=SHARED_HOME_PATH,
            location=RemoteLocation(host=target, path=SHARED_HOME_PATH),
        )
