"""
Shared pytest fixtures for mongobackup tests.

This module provides fixtures for:
- Run configuration (raw mapping and parsed BackupConfig)
- Fake mongodump/mongoexport tools that write realistic output
- Recording storage and mock mailer collaborators
- Temporary dump directories
"""

import os
import tarfile
import threading
import subprocess
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from mongobackup.config import BackupConfig
from mongobackup.models import Project
from mongobackup.backup.exports import ExportCoordinator
from mongobackup.backup.notify import Mailer


RUN_DATE = datetime(2024, 5, 1, 23, 59, 59)
RUN_TIMESTAMP = '2024-05-01'

# Collections written by a complete dump of the source database
FULL_DUMP_COLLECTIONS = [
    'boards',
    'discussions',
    'discussions_cache',
    'projects',
    'subject_sets',
    'users',
    'subjects',
    'classifications',
    'groups',
    'galaxy_zoo_subjects',
]


@pytest.fixture
def config_dict():
    """Raw run configuration as it would come out of the YAML file."""
    return {
        'mongo': {
            'hosts': ['db1.example.com:27017', 'db2.example.com:27017'],
            'admin': {'user': 'admin', 'pass': 'adminpass'},
            'source': {
                'rs_name': 'rs0',
                'db_name': 'ouroboros',
                'user': 'backup',
                'pass': 's3cret'
            }
        },
        'aws': {
            's3': {
                'access_key_id': 'test_access_key',
                'secret_access_key': 'test_secret_key',
                'bucket': 'test-bucket',
                'prefix': 'databases/'
            },
            'ses': {
                'address': 'smtp.example.com',
                'port': 587,
                'domain': 'example.com',
                'user_name': 'mailer',
                'password': 'mailpass'
            }
        },
        'sanitized_projects': {
            '5a1': ['alice@example.com'],
            '5a2': ['bob@example.com']
        },
        'filtered_recipients': ['partners@example.com'],
        'export': {'stagger_seconds': 0},
        'project_exports': False
    }


@pytest.fixture
def backup_config(config_dict):
    return BackupConfig.from_dict(config_dict)


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / 'out'
    path.mkdir()
    return path


def fake_enumerator(hosts, rs_name, db_name, user, password, timestamp):
    """Stands in for enumerate_projects() with two projects."""
    return [
        Project(id='5a1', name='galaxy_zoo', timestamp=timestamp),
        Project(id='5a2', name='serengeti', timestamp=timestamp),
    ]


@pytest.fixture
def enumerator():
    return fake_enumerator


class FakeMongoTools:
    """
    subprocess.run replacement that behaves like mongodump/mongoexport.

    mongoexport writes the --out file; mongodump writes
    {out}/{db}/{collection}.bson and .metadata.json.
    """

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on or set()
        self._lock = threading.Lock()

    def __call__(self, argv, capture_output=True, text=True, timeout=None):
        with self._lock:
            self.calls.append(list(argv))

        options = self._options(argv)
        name = options.get('--collection') or options.get('--db')
        if name in self.fail_on:
            return subprocess.CompletedProcess(argv, 1, '', f"failed to export {name}")

        if argv[0] == 'mongoexport':
            with open(options['--out'], 'w') as f:
                f.write('{"_id": 1}\n')
        else:
            db_dir = os.path.join(options['--out'], options['--db'])
            os.makedirs(db_dir, exist_ok=True)
            if '--collection' in options:
                collections = [options['--collection']]
            elif options['--db'] == 'ouroboros':
                collections = FULL_DUMP_COLLECTIONS
            else:
                collections = ['items', 'secrets']
            for collection in collections:
                with open(os.path.join(db_dir, f"{collection}.bson"), 'wb') as f:
                    f.write(b'\x05\x00\x00\x00\x00')
                with open(os.path.join(db_dir, f"{collection}.metadata.json"), 'w') as f:
                    f.write('{}')

        return subprocess.CompletedProcess(argv, 0, '', '')

    @staticmethod
    def _options(argv):
        options = {}
        for index, arg in enumerate(argv):
            if arg.startswith('-') and '=' not in arg and index + 1 < len(argv):
                options[arg] = argv[index + 1]
        return options

    def commands(self, tool):
        return [c for c in self.calls if c[0] == tool]


@pytest.fixture
def mongo_tools():
    return FakeMongoTools()


@pytest.fixture
def coordinator(mongo_tools):
    return ExportCoordinator(stagger=0, runner=mongo_tools)


@pytest.fixture
def failing_tools():
    """Factory for fake tools that fail on the named collections or databases."""
    def factory(*names):
        tools = FakeMongoTools(fail_on=set(names))
        return tools, ExportCoordinator(stagger=0, runner=tools)
    return factory


class RecordingStorage:
    """
    In-memory stand-in for S3Storage.

    Records the member names of every uploaded archive at upload time,
    before the run purges the working directory.
    """

    def __init__(self, prefix='databases/'):
        self.prefix = prefix
        self.uploads = {}
        self._lock = threading.Lock()

    def object_key(self, timestamp, path):
        return f"{self.prefix}{timestamp}/{path}"

    def upload(self, local_path, s3_key):
        members = []
        if tarfile.is_tarfile(local_path):
            with tarfile.open(local_path, 'r:gz') as tar:
                members = sorted(tar.getnames())
        with self._lock:
            self.uploads[s3_key] = members
        return s3_key

    def presigned_url(self, s3_key, expires_in=604800):
        return f"https://test-bucket.s3.amazonaws.com/{s3_key}?X-Amz-Expires={expires_in}"


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def mailer():
    return MagicMock(spec=Mailer)


@pytest.fixture
def clock():
    return MagicMock(return_value=RUN_DATE)


@pytest.fixture
def secondary_selector():
    selector = MagicMock()
    selector.select.return_value = 'db2.example.com:27017'
    return selector


@pytest.fixture
def dump_tree(tmp_path):
    """
    Create a flattened dump directory.

    Creates:
    - ouroboros_2024-05-01/{subjects,groups,classifications}.bson
    - ouroboros_2024-05-01/{boards,projects}.bson and .metadata.json
    """
    root = tmp_path / f"ouroboros_{RUN_TIMESTAMP}"
    root.mkdir()
    for name in ('subjects', 'groups', 'classifications'):
        (root / f"{name}.bson").write_bytes(b'data')
    for name in ('boards', 'projects'):
        (root / f"{name}.bson").write_bytes(b'data')
        (root / f"{name}.metadata.json").write_text('{}')
    return root


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3
