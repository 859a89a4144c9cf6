# src/aema/core/__init__.py
"""
Buffer core: schema validation, reconciliation loop, chunked mutations, facade.
"""
