"""
Agent assignments and deterministic rate resolution.
"""

__all__: list[str] = []
