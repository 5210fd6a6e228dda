"""
LOTO Work Permit service
Blueprint registry.
"""
