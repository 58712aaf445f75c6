"""
Replica selection and project discovery.

Dumps and exports only ever run against a member reporting SECONDARY.
"""

import logging
from typing import Callable, List, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from mongobackup.models import Project


logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = 5000


class SelectionError(Exception):
    """Raised when no candidate host is a SECONDARY."""
    pass


def is_secondary(host: str, user: str, password: str) -> bool:
    """
    Ask a host for its own replication state.

    Returns:
        True if the member flagged as "self" reports SECONDARY
    """
    client = MongoClient(
        host,
        username=user,
        password=password,
        authSource='admin',
        directConnection=True,
        serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS
    )
    try:
        status = client.admin.command('replSetGetStatus')
    finally:
        client.close()

    for member in status.get('members', []):
        if member.get('self'):
            return member.get('stateStr') == 'SECONDARY'
    return False


class ReplicaSelector:
    """
    Picks the first SECONDARY from an ordered list of hosts.
    """

    def __init__(self, hosts: List[str], admin_user: str, admin_password: str,
                 check: Optional[Callable[[str, str, str], bool]] = None):
        self.hosts = hosts
        self.admin_user = admin_user
        self.admin_password = admin_password
        self.check = check or is_secondary

    def select(self) -> str:
        """
        Check hosts in order.

        Returns:
            The first host reporting SECONDARY

        Raises:
            SelectionError: If no host qualifies
        """
        for host in self.hosts:
            try:
                if self.check(host, self.admin_user, self.admin_password):
                    logger.info(f"Found secondary MongoDB server: {host}")
                    return host
                logger.info(f"{host} is not a secondary, skipping")
            except PyMongoError as e:
                logger.warning(f"Could not determine replication state of {host}: {e}")

        raise SelectionError("No secondary MongoDB server found. Aborting")


def enumerate_projects(
    hosts: List[str],
    rs_name: str,
    db_name: str,
    user: Optional[str],
    password: Optional[str],
    timestamp: str
) -> List[Project]:
    """
    Read the project directory from the source database.

    The client is closed before returning; no connection is held for the
    rest of the run.
    """
    client = MongoClient(
        hosts,
        replicaset=rs_name,
        username=user,
        password=password,
        authSource=db_name,
        serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS
    )
    try:
        documents = list(client[db_name]['projects'].find({}, {'name': 1}))
    finally:
        client.close()

    projects = [
        Project(id=str(document['_id']), name=document['name'], timestamp=timestamp)
        for document in documents
    ]

    logger.info(f"Found {len(projects)} projects in {db_name}")
    return projects
