"""
Infrastructure Layer
=====================

Low-level technical concerns shared across the service:
- Logging setup
"""
