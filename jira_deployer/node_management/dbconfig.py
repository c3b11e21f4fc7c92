"""
Database connection rewrite for ``dbconfig.xml``.
"""

import re

from loguru import logger

from ..errors import ProvisioningError
from ..utils.remote import RemoteSession

# Group 4 is the host. Groups 1 and 5 keep the protocol prefix, credentials,
# port, database name and query string untouched.
DBCONFIG_URL_PATTERN = re.compile(r"(<url>.*(@(//)?|//))([^:/]+)(.*</url>)")


def rewrite_dbconfig_url(content: str, database_ip: str) -> str:
    """Point every ``<url>`` element in a dbconfig document at ``database_ip``"""
    return DBCONFIG_URL_PATTERN.sub(lambda m: f"{m.group(1)}{database_ip}{m.group(5)}", content)


def replace_dbconfig_url(session: RemoteSession, dbconfig_path: str, database_ip: str) -> None:
    content = session.read_text(dbconfig_path)
    if DBCONFIG_URL_PATTERN.search(content) is None:
        raise ProvisioningError(f"No database <url> found in {dbconfig_path} on {session.target}")
    session.write_text(dbconfig_path, rewrite_dbconfig_url(content, database_ip))
    logger.debug(f"{dbconfig_path} on {session.target} now points at {database_ip}")
