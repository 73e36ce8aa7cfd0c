"""
Database Adapter

Resolves PostgreSQL connection settings and opens psycopg2 connections.

Settings come from the `postgresql` section of the configuration; the usual
environment variables override it so the job can run in a container without a
config change:
    DATABASE_HOST, DATABASE_PORT, DATABASE_NAME, DATABASE_USER, DATABASE_PASSWORD,
    DATABASE_SCHEMA
"""

import os
from typing import Dict, Optional

import psycopg2

from .utils import get_logger

logger = get_logger("db_adapter")


def get_db_config(config: Optional[Dict] = None) -> Dict[str, str]:
    """
    Get database configuration from the config file and environment variables.

    Priority:
    1. Environment variables
    2. `postgresql` section of the configuration
    3. Built-in defaults

    Args:
        config: Full configuration dictionary (optional)

    Returns:
        Dictionary with host, port, database, user, password, schema
    """
    pg_config = (config or {}).get("postgresql", {}) or {}
    db_config = {
        'host': os.getenv('DATABASE_HOST', pg_config.get('host', 'localhost')),
        'port': str(os.getenv('DATABASE_PORT', pg_config.get('port', 5432))),
        'database': os.getenv('DATABASE_NAME', pg_config.get('database', 'billing')),
        'user': os.getenv('DATABASE_USER', pg_config.get('user', 'billing')),
        'password': os.getenv('DATABASE_PASSWORD', pg_config.get('password', '')),
        'schema': os.getenv('DATABASE_SCHEMA', pg_config.get('schema', 'public')),
    }
    logger.debug("Resolved database settings", host=db_config['host'], database=db_config['database'])
    return db_config


def get_db_connection(config: Optional[Dict] = None):
    """
    Open a psycopg2 connection.

    Args:
        config: Full configuration dictionary (optional)

    Returns:
        psycopg2 connection object
    """
    db_config = get_db_config(config)

    conn = psycopg2.connect(
        host=db_config['host'],
        port=db_config['port'],
        database=db_config['database'],
        user=db_config['user'],
        password=db_config['password'],
    )

    logger.debug("Database connection established", host=db_config['host'], database=db_config['database'])
    return conn


def check_db_connectivity(config: Optional[Dict] = None) -> bool:
    """
    Check if database is accessible.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        conn = get_db_connection(config)
        with conn.cursor() as cursor:
            cursor.execute("SELECT 1")
        conn.close()
        logger.info("Database connectivity check passed")
        return True
    except psycopg2.Error as e:
        logger.error("Database connectivity check failed", error=str(e))
        return False
