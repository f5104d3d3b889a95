"""
Infrastructure
==============

Cross-module infrastructure: database engine and session management.
"""
