import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml


class ConfigError(Exception):
    """Raised when the run configuration is missing or incomplete."""
    pass


class Config:
    """Base configuration"""

    # Run configuration file (YAML)
    CONFIG_PATH = os.environ.get('CONFIG_PATH') or '/config.yml'

    # Working directory, purged at the end of every run
    OUTPUT_DIR = os.environ.get('OUTPUT_DIR') or '/out'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/var/log/mongobackup'
    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_PATH = os.environ.get('CONFIG_PATH') or os.path.join(DATA_DIR, 'config.yml')
    OUTPUT_DIR = os.path.join(DATA_DIR, 'out')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


@dataclass
class MongoCredentials:
    host: str
    db_name: str
    user: Optional[str] = None
    password: Optional[str] = None


@dataclass
class StandaloneDatabase:
    """An independently hosted database backed up on its own."""
    name: str
    host: str
    port: int
    database: str
    username: str
    password: str
    sanitized_excludes: List[str] = field(default_factory=list)
    email_recipients: List[str] = field(default_factory=list)


@dataclass
class S3Settings:
    access_key_id: str
    secret_access_key: str
    bucket: str
    prefix: str = ''
    region: str = 'us-east-1'


@dataclass
class SMTPSettings:
    address: str
    port: int
    domain: Optional[str]
    user_name: str
    password: str


@dataclass
class NotificationSettings:
    sender: str = 'team@zooniverse.org'
    noreply: str = 'noreply@zooniverse.org'
    operators: List[str] = field(default_factory=lambda: ['sysadmins@zooniverse.org'])


@dataclass
class BackupConfig:
    """
    Parsed run configuration.

    Built from the YAML file by load_config(); every required key is checked
    up front so that a broken file fails before any data is moved.
    """
    hosts: List[str]
    admin_user: str
    admin_password: str
    rs_name: str
    source: MongoCredentials
    s3: S3Settings
    smtp: SMTPSettings
    sandbox: Optional[MongoCredentials] = None
    staging: Optional[MongoCredentials] = None
    sanitized_projects: Dict[str, List[str]] = field(default_factory=dict)
    sandbox_projects: List[str] = field(default_factory=list)
    filtered_recipients: List[str] = field(default_factory=list)
    standalone_projects: List[StandaloneDatabase] = field(default_factory=list)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    export_stagger_seconds: float = 1.0
    export_timeout_seconds: Optional[float] = None
    project_exports: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupConfig':
        """
        Build a BackupConfig from the raw YAML mapping.

        Raises:
            ConfigError: If a required key is missing
        """
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")

        mongo = _require(data, 'mongo')
        # Older files keep the source block under mongo.ouroboros
        source_key = 'mongo.ouroboros' if 'source' not in mongo and 'ouroboros' in mongo else 'mongo.source'
        source = _require(data, source_key)
        s3 = _require(data, 'aws.s3')
        ses = _require(data, 'aws.ses')

        hosts = _require(data, 'mongo.hosts')
        if not hosts:
            raise ConfigError("Configuration key 'mongo.hosts' must list at least one host")

        if data.get('sandbox_projects') and not mongo.get('sandbox'):
            raise ConfigError("Missing required configuration key: 'mongo.sandbox' (sandbox_projects is set)")

        notifications = data.get('notifications') or {}
        export = data.get('export') or {}

        return cls(
            hosts=list(hosts),
            admin_user=_require(data, 'mongo.admin.user'),
            admin_password=_require(data, 'mongo.admin.pass'),
            rs_name=_require(data, f"{source_key}.rs_name"),
            source=MongoCredentials(
                host=','.join(hosts),
                db_name=_require(data, f"{source_key}.db_name"),
                user=source.get('user'),
                password=source.get('pass')
            ),
            sandbox=_optional_source(mongo, 'sandbox'),
            staging=_optional_source(mongo, 'staging'),
            s3=S3Settings(
                access_key_id=_require(data, 'aws.s3.access_key_id'),
                secret_access_key=_require(data, 'aws.s3.secret_access_key'),
                bucket=_require(data, 'aws.s3.bucket'),
                prefix=s3.get('prefix') or '',
                region=s3.get('region') or 'us-east-1'
            ),
            smtp=SMTPSettings(
                address=_require(data, 'aws.ses.address'),
                port=int(_require(data, 'aws.ses.port')),
                domain=ses.get('domain'),
                user_name=_require(data, 'aws.ses.user_name'),
                password=_require(data, 'aws.ses.password')
            ),
            sanitized_projects={
                str(project_id): list(emails or [])
                for project_id, emails in (data.get('sanitized_projects') or {}).items()
            },
            sandbox_projects=[str(p) for p in data.get('sandbox_projects') or []],
            filtered_recipients=list(data.get('filtered_recipients') or []),
            standalone_projects=[
                _standalone(name, settings)
                for name, settings in (data.get('standalone_projects') or {}).items()
            ],
            notifications=NotificationSettings(
                sender=notifications.get('sender', NotificationSettings.sender),
                noreply=notifications.get('noreply', NotificationSettings.noreply),
                operators=list(notifications.get('operators') or ['sysadmins@zooniverse.org'])
            ),
            export_stagger_seconds=float(export.get('stagger_seconds', 1.0)),
            export_timeout_seconds=export.get('timeout_seconds'),
            project_exports=bool(data.get('project_exports', True))
        )

    def source_for(self, project_id: str) -> MongoCredentials:
        """Return the database a project's collections live in."""
        if project_id in self.sandbox_projects:
            if self.sandbox is None:
                raise ConfigError(
                    f"Project {project_id} is a sandbox project but 'mongo.sandbox' is not configured"
                )
            return self.sandbox
        return self.source


def load_config(path: str) -> BackupConfig:
    """
    Load and validate the YAML run configuration.

    Args:
        path: Path to the YAML file

    Returns:
        BackupConfig instance

    Raises:
        ConfigError: If the file is missing, unparsable or incomplete
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    return BackupConfig.from_dict(data)


def _require(data: Dict[str, Any], dotted_key: str) -> Any:
    value = data
    for part in dotted_key.split('.'):
        if not isinstance(value, dict) or value.get(part) is None:
            raise ConfigError(f"Missing required configuration key: '{dotted_key}'")
        value = value[part]
    return value


def _optional_source(mongo: Dict[str, Any], name: str) -> Optional[MongoCredentials]:
    settings = mongo.get(name)
    if not settings:
        return None

    for key in ('host', 'db_name'):
        if not settings.get(key):
            raise ConfigError(f"Missing required configuration key: 'mongo.{name}.{key}'")

    return MongoCredentials(
        host=settings['host'],
        db_name=settings['db_name'],
        user=settings.get('user'),
        password=settings.get('pass')
    )


def _standalone(name: str, settings: Dict[str, Any]) -> StandaloneDatabase:
    settings = settings or {}
    for key in ('host', 'port', 'database', 'username', 'password'):
        if settings.get(key) is None:
            raise ConfigError(f"Missing required configuration key: 'standalone_projects.{name}.{key}'")

    return StandaloneDatabase(
        name=name,
        host=settings['host'],
        port=int(settings['port']),
        database=settings['database'],
        username=settings['username'],
        password=settings['password'],
        sanitized_excludes=list(settings.get('sanitized_excludes') or []),
        email_recipients=list(settings.get('email_recipients') or [])
    )
