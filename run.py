#!/usr/bin/env python3
"""Backup runner"""
import sys
from mongobackup.cli import main

if __name__ == '__main__':
    # Configuration comes from $CONFIG_PATH, $OUTPUT_DIR and $BACKUP_ENV
    sys.exit(main())
