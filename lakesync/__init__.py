"""
Lakesync Replication Engine
===========================

A config-driven replication pipeline that supports:
- Full Refresh: Complete table extraction into a new generation
- Incremental: Cursor-based extraction resumed from the last checkpoint

Rows are read from a relational source, written as Parquet batches and
uploaded to S3-compatible storage. Each uploaded batch is followed by a
compare-and-swap checkpoint commit, so a restarted run never skips rows.
"""

__version__ = "1.0.0"
