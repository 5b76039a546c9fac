"""
Trellis Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (in-memory DynamoDB, cascade via streams)
- e2e/: End-to-end tests (DynamoDB Local)
"""
