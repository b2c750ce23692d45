"""
Background job system.

This package provides:
- A durable job store with compare-and-set status transitions
- Deduplicated enqueueing keyed on batch and payload
- A runner that dispatches jobs to handlers registered per kind
- A polling worker for continuous processing
"""
