"""
REST User Sync - One-way synchronization of identities from a paginated REST user directory.

This package fetches users from a remote REST directory and reconciles them into
a local identity store, creating and updating identities along with their roles,
attributes and password credentials.
"""

__version__ = "1.0.0"
__author__ = "REST User Sync Team"
