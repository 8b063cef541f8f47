"""
Configuration package: application constants and logging setup.
"""
