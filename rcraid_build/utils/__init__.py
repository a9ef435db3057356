"""
Shared helpers for the rcraid build tooling.
"""
