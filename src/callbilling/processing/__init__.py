"""
Billing cycles and the background sessions that drive them.
"""
