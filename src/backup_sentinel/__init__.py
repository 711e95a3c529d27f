"""Backup Sentinel — tracks every copy of every file across storage devices."""

__version__ = "0.1.0"
