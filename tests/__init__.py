"""
Test Package for range partitioned tables
Contains unit tests and SQLite/PostgreSQL integration tests.
"""
