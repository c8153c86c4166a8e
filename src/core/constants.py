"""Core constants used across Landfall modules.

This module centralizes defaults and file-layout names.
Keeping values here avoids magic literals in business logic.
"""

from __future__ import annotations

from pathlib import Path

DEFAULT_DATA_ROOT = Path(".landfall")
LEDGER_FILE_NAME = "ledger.sqlite"
SQLITE_TIMEOUT_SECONDS = 30.0
DEFAULT_BATCH_MAX_FILES = 10
DEFAULT_BATCH_MAX_WAIT_SECONDS = 1.0
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 300.0
DEFAULT_WATCH_INTERVAL_SECONDS = 5.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 600.0
DEFAULT_SQS_WAIT_SECONDS = 20
DEFAULT_SQS_MAX_MESSAGES = 10
DEFAULT_CSV_DELIMITER = ","
DEFAULT_CSV_QUOTE_CHAR = '"'
DEFAULT_ENCODING = "utf-8"
GZIP_SUFFIXES = (".gz", ".gzip")
GZIP_MAGIC = b"\x1f\x8b"
SUPPORTED_FORMAT_TYPES = ("csv", "jsonl")
SUPPORTED_COLUMN_TYPES = ("string", "integer", "float", "boolean", "date")
SUPPORTED_ON_ERROR_POLICIES = ("abort_file", "skip_row")
SUPPORTED_COMPRESSIONS = ("auto", "none", "gzip")
TRUE_LITERALS = ("true", "t", "yes", "y", "1")
FALSE_LITERALS = ("false", "f", "no", "n", "0")
SOURCE_KEY_COLUMN = "_source_key"
SOURCE_GENERATION_COLUMN = "_source_generation"
LOADED_AT_COLUMN = "_loaded_at"
INTERRUPTED_LOAD_DETAIL = "interrupted: load did not finish before process exit"
