"""Collaborator adapters for the systems the engine reads from.

The issue tracker supplies tickets, relationships and dev-status links; the
code host supplies pull requests, commits and diff statistics. Each module
pairs a Protocol with a real adapter and an in-memory mock.
"""
