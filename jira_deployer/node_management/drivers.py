"""
JDBC driver installation.
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional

from loguru import logger

from ..configs import DatabaseDriver
from ..errors import ProvisioningError, TransientRemoteError
from ..utils import actions
from ..utils.remote import RemoteSession


@dataclass(frozen=True)
class DriverArtifact:
    url: str
    # Jar path relative to the download location once unpacked
    jar: str
    packed: bool = True


DRIVER_ARTIFACTS: Dict[DatabaseDriver, DriverArtifact] = {
    DatabaseDriver.MYSQL: DriverArtifact(
        url="https://dev.mysql.com/get/Downloads/Connector-J/mysql-connector-java-5.1.40.tar.gz",
        jar="mysql-connector-java-5.1.40/mysql-connector-java-5.1.40-bin.jar",
    ),
    DatabaseDriver.MANAGED: DriverArtifact(
        url="https://repo1.maven.org/maven2/org/mariadb/jdbc/mariadb-java-client/2.7.4/mariadb-java-client-2.7.4.jar",
        jar="mariadb-java-client-2.7.4.jar",
        packed=False,
    ),
}


class DriverInstaller:
    """
    Installs the JDBC driver selected by ``driver`` into a Jira installation.

    Args:
        driver: Which driver to install
        retry: Extra download attempts after the first one
        retry_delay: Fixed pause between download attempts
    """

    def __init__(self, driver: DatabaseDriver, retry: int = 3, retry_delay: float = 5.0):
        self.driver = driver
        self.artifact = DRIVER_ARTIFACTS[driver]
        self.retry = retry
        self.retry_delay = retry_delay

    def _download(self, session: RemoteSession, destination: str) -> None:
        last_exc: Optional[Exception] = None
        for attempt in range(self.retry + 1):
            try:
                session.run(actions.download(self.artifact.url, destination, timeout=120))
                return
            except (TransientRemoteError, ProvisioningError) as e:
                last_exc = e
                if attempt < self.retry:
                    logger.warning(f"Downloading {self.driver.value} driver failed (attempt {attempt + 1}), retrying: {e}")
                    time.sleep(self.retry_delay)
        raise ProvisioningError(
            f"Could not download {self.artifact.url} after {self.retry + 1} attempts: {last_exc}"
        )

    def install(self, session: RemoteSession, unpacked_product: str) -> None:
        download = self.artifact.url.rsplit("/", 1)[-1]
        self._download(session, download)
        if self.artifact.packed:
            session.run(actions.unpack(download))
        session.run(actions.copy(self.artifact.jar, f"{unpacked_product}/lib"))
        logger.info(f"Installed {self.driver.value} driver on {session.target}")
