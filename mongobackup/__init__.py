import os
import logging
from logging.handlers import RotatingFileHandler


def configure_logging(log_dir, debug=False):
    """Configure logging for a backup run"""

    # Create logs directory if it doesn't exist
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'mongobackup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_run(config_name=None, config_path=None, output_dir=None):
    """Backup run factory"""

    # Load settings
    if config_name is None:
        config_name = os.environ.get('BACKUP_ENV', 'production')

    from mongobackup.config import config, load_config
    settings = config[config_name]

    # Configure logging
    configure_logging(settings.LOG_DIR, settings.DEBUG)

    # Fails before anything is touched if the file is incomplete
    backup_config = load_config(config_path or settings.CONFIG_PATH)

    from mongobackup.backup.executor import BackupRun
    from mongobackup.backup.notify import Mailer
    from mongobackup.backup.storage import S3Storage

    storage = S3Storage(
        access_key=backup_config.s3.access_key_id,
        secret_key=backup_config.s3.secret_access_key,
        bucket_name=backup_config.s3.bucket,
        region=backup_config.s3.region,
        prefix=backup_config.s3.prefix
    )

    mailer = Mailer(
        address=backup_config.smtp.address,
        port=backup_config.smtp.port,
        user_name=backup_config.smtp.user_name,
        password=backup_config.smtp.password,
        domain=backup_config.smtp.domain
    )

    return BackupRun(
        backup_config,
        output_dir or settings.OUTPUT_DIR,
        storage,
        mailer
    )
