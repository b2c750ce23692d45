"""
Idempotent ingestion of externally sourced records and their normalization.
"""
