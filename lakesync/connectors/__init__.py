"""
Sync Connectors
===============

Source and destination connectors for the replication pipeline.
"""

from .base import SourceConnector
from .object_store import ObjectStoreUploader, build_client
from .sql_connector import SQLConnector

__all__ = ["SourceConnector", "SQLConnector", "ObjectStoreUploader", "build_client"]
