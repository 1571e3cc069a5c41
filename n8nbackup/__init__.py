"""Backup, restore and maintenance tooling for the n8n PostgreSQL deployment."""

__version__ = "0.1.0"
