"""
Balance ledger.

Keep import side-effect free: importing models here would map them on every
submodule import.
"""

__all__: list[str] = []
