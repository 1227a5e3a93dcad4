"""
Test suite for colmgr.

- Unit tests run against the in-memory store
- Integration tests exercise the Redis store and skip without a server
"""
