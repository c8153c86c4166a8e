"""Event-driven ingestion runtime.

This package admits object events, batches them into load tasks, and
loads staged files into destination tables with retry and quarantine.
"""
