"""
Utilities Package

Logging setup and the exception hierarchy.
"""
