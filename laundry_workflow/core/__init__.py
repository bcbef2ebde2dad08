"""
Core package for shared utilities.

Holds application settings and structured logging used by the API layer
and the workflow engine.
"""
