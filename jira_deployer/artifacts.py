"""
Jira Storage Artifacts

Bundles what every node installs (apps, collectd configs and collectd plugin
jars) and uploads it to the plugins transport. Nodes and the shared home pull
it from there with the AWS CLI.
"""

import hashlib
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence

import requests
from loguru import logger

from .cloud.base import Storage
from .configs import NodeConfig
from .errors import ProvisioningError


class JiraStoragePaths:
    """Directory names inside the plugins transport"""
    APPS = "apps"
    COLLECTD_CONFIGS = "collectd.conf.d"
    COLLECTD_JARS = "collectdjars"


def collectd_config_name(uri: str) -> str:
    """File name under which a collectd config URI is shipped to the nodes"""
    return f"{hashlib.md5(uri.encode('utf-8')).hexdigest().upper()}.conf"


@dataclass
class PreparedArtifacts:
    apps: List[str]
    collectd_configs: List[str]
    collectd_jars: List[str]


class ArtifactPreparer:
    """
    Args:
        apps: Local app (plugin) files
        collectd_jars: Local collectd plugin jars
        download_timeout: Seconds allowed per collectd config download
    """

    def __init__(self, apps: Sequence[str], collectd_jars: Sequence[str], download_timeout: int = 30):
        self.apps = list(apps)
        self.collectd_jars = list(collectd_jars)
        self.download_timeout = download_timeout

    def _copy_mandatory(self, files: Iterable[str], directory: Path) -> List[str]:
        directory.mkdir(parents=True, exist_ok=True)
        copied = []
        for file in files:
            source = Path(file)
            if not source.is_file():
                raise ProvisioningError(f"Artifact not found: {source}")
            shutil.copy2(source, directory / source.name)
            copied.append(source.name)
        return copied

    def _fetch_collectd_configs(self, configs: Sequence[NodeConfig], directory: Path) -> List[str]:
        """Best-effort: a config that cannot be fetched is logged and skipped"""
        directory.mkdir(parents=True, exist_ok=True)
        uris = sorted({uri for c in configs for uri in c.diagnostics.collectd_configs if uri})
        fetched = []
        for uri in uris:
            name = collectd_config_name(uri)
            try:
                response = requests.get(uri, timeout=self.download_timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                logger.warning(f"Skipping collectd config {uri}: {e}")
                continue
            (directory / name).write_bytes(response.content)
            fetched.append(name)
        return fetched

    def prepare(self, configs: Sequence[NodeConfig], transport: Storage) -> PreparedArtifacts:
        with tempfile.TemporaryDirectory(prefix="jira-storage-") as tmp:
            root = Path(tmp)
            prepared = PreparedArtifacts(
                apps=self._copy_mandatory(self.apps, root / JiraStoragePaths.APPS),
                collectd_configs=self._fetch_collectd_configs(configs, root / JiraStoragePaths.COLLECTD_CONFIGS),
                collectd_jars=self._copy_mandatory(self.collectd_jars, root / JiraStoragePaths.COLLECTD_JARS),
            )
            for directory in sorted(root.iterdir()):
                transport.upload(directory)
        logger.info(
            f"Uploaded {len(prepared.apps)} apps, {len(prepared.collectd_configs)} collectd configs "
            f"and {len(prepared.collectd_jars)} collectd jars to {transport.location.uri}"
        )
        return prepared
