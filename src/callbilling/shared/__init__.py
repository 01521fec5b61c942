"""
Shared infrastructure: database sessions, logging and exceptions.
"""
