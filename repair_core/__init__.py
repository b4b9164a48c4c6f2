"""
Device Repair Workflow Core

Data-driven repair case workflows, multi-level document approvals,
timeout escalation and hash-chained audit trails.
"""

__version__ = "1.0.0"
