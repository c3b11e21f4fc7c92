"""
MySQL in Docker, seeded from a dataset snapshot.
"""

from dataclasses import dataclass

from loguru import logger

from .cloud.base import Database
from .errors import ProvisioningError
from .utils import actions
from .utils.remote import RemoteSession
from .utils.timing import WaitUntilTimeoutError, wait_until


@dataclass
class DockerMySqlDatabase(Database):
    """
    Args:
        source: URI of a tar.bz2 archive of the MySQL data directory
        data_dir: Where the data directory is unpacked on the machine
        image: Docker image to run
    """
    source: str
    data_dir: str = "/home/ubuntu/database"
    image: str = "mysql:5.6.42"
    container: str = "jira-database"
    ready_timeout: int = 15 * 60

    def setup(self, session: RemoteSession) -> str:
        session.run(actions.apt_install(["docker.io", "lbzip2"], timeout=5 * 60))
        session.run(actions.download(self.source, "database.tar.bz2", timeout=30 * 60))
        session.run(actions.make_dirs(self.data_dir))
        session.run(actions.run(
            "tar", "--use-compress-program=lbzip2", "-xf", "database.tar.bz2",
            "-C", self.data_dir, "--strip-components=1",
            timeout=30 * 60,
        ))
        session.run(actions.run(
            "docker", "run", "-d", "--name", self.container,
            "-p", "3306:3306",
            "-v", f"{self.data_dir}:/var/lib/mysql",
            self.image,
            sudo=True,
            timeout=5 * 60,
        ))
        return self.data_dir

    def _mysql(self, sql: str) -> actions.RemoteAction:
        return actions.run("docker", "exec", self.container, "mysql", "-h", "127.0.0.1", "-u", "root", "-e", sql, sudo=True)

    def start(self, jira_uri: str, session: RemoteSession) -> None:
        def ready() -> bool:
            return session.safe_execute(self._mysql("SELECT 1").to_command()).success

        try:
            wait_until(ready, timeout=self.ready_timeout, interval=10, description="MySQL accepting connections")
        except WaitUntilTimeoutError as e:
            raise ProvisioningError(str(e)) from e
        session.run(self._mysql(
            "UPDATE jiradb.propertystring SET propertyvalue = '" + jira_uri.replace("'", "''") + "' "
            "WHERE id IN (SELECT id FROM jiradb.propertyentry WHERE property_key LIKE '%baseurl%');"
        ))
        logger.info(f"Database base URL set to {jira_uri}")
