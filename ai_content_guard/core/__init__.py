"""
Core modules for AI Content Guard.

This package contains provider dispatch, caching, spend governance,
adaptive selection and the content services built on them.
"""
