#!/usr/bin/env python3
"""Database initialization script."""

import sys

from taskflow.config import load_config
from taskflow.core.logging import setup_logging
from taskflow.storage.database import Database


def main():
    """Create the taskflow tables in the configured database."""
    config = load_config()
    logger = setup_logging(level=config.log_level.value)

    try:
        logger.info(f"Initializing database {config.database_url}")
        database = Database(config.database_url, echo=config.database_echo)
        database.create_tables()
        logger.info(database.check_connection())
        logger.info("Database initialization completed")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
