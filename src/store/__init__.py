"""Storage layer.

This package persists the file registry and destination tables in the
SQLite ledger and reads staged objects from local or S3 stages.
"""
