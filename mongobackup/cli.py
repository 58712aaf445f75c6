"""
Command-line interface for a backup run.

Usage:
    python -m mongobackup.cli [--config /config.yml] [--output-dir /out] [--env production]

Exit codes:
    0  backup complete
    1  backup failed (nothing or only part of it was uploaded)
    2  backup uploaded but a notification mail was not delivered
"""

import argparse
import logging
import sys

from mongobackup import create_run
from mongobackup.config import ConfigError


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_MAIL_FAILED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Back up the MongoDB replica set to S3 and mail the manifest"
    )
    parser.add_argument('--config', dest='config_path', help="YAML run configuration (default: $CONFIG_PATH)")
    parser.add_argument('--output-dir', help="Working directory, emptied after the run (default: $OUTPUT_DIR)")
    parser.add_argument('--env', dest='config_name', choices=['development', 'production'],
                        help="Settings profile (default: $BACKUP_ENV or production)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        run = create_run(args.config_name, args.config_path, args.output_dir)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILED

    result = run.execute()

    if not result.succeeded:
        logger.error(f"Backup failed: {result.error_message}")
        return EXIT_FAILED

    if result.mail_failures:
        logger.error(f"Backup complete but {len(result.mail_failures)} notification(s) were not delivered")
        return EXIT_MAIL_FAILED

    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
