"""Operator CLI for the SyncJobs API."""

__version__ = "1.0.0"
