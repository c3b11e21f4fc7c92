"""
Launch environment (``bin/setenv.sh``) of an unpacked Jira.
"""

import re
from dataclasses import dataclass
from typing import List

from ..configs import NodeConfig
from ..utils.remote import RemoteSession


@dataclass(frozen=True)
class GcLog:
    unpacked_product: str

    @property
    def path(self) -> str:
        return f"{self.unpacked_product}/logs/atlassian-jira-gc-%t.log"

    def jvm_flags(self) -> List[str]:
        return [
            f"-Xloggc:{self.path}",
            "-XX:+UseGCLogFileRotation",
            "-XX:NumberOfGCLogFiles=5",
            "-XX:GCLogFileSize=20M",
            "-XX:+PrintGCDetails",
            "-XX:+PrintGCDateStamps",
            "-XX:+PrintTenuringDistribution",
        ]


def _assign(content: str, variable: str, value: str) -> str:
    line = f'{variable}="{value}"'
    pattern = re.compile(rf"^{variable}=.*$", re.MULTILINE)
    if pattern.search(content):
        return pattern.sub(lambda _: line, content)
    return f"{content.rstrip()}\n{line}\n"


def render_setenv(original: str, config: NodeConfig, gc_log: GcLog, jira_ip: str) -> str:
    """Apply heap sizing and extra flags to the contents of a stock setenv.sh"""
    extra = [
        *config.jvm_args.extra,
        *gc_log.jvm_flags(),
        *config.diagnostics.jvm_flags(jira_ip),
    ]
    content = _assign(original, "JVM_MINIMUM_MEMORY", config.jvm_args.xms)
    content = _assign(content, "JVM_MAXIMUM_MEMORY", config.jvm_args.xmx)
    return _assign(content, "JVM_SUPPORT_RECOMMENDED_ARGS", " ".join(extra))


class SetenvSh:

    def __init__(self, unpacked_product: str):
        self.path = f"{unpacked_product}/bin/setenv.sh"

    def setup(self, session: RemoteSession, config: NodeConfig, gc_log: GcLog, jira_ip: str) -> None:
        original = session.read_text(self.path)
        session.write_text(self.path, render_setenv(original, config, gc_log, jira_ip))
