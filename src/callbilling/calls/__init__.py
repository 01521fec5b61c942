"""
Call events and the adapter that normalizes upstream call rows.

NOTE:
This package __init__ MUST be lightweight.
Do NOT import SQLAlchemy models here.
"""

__all__: list[str] = []
