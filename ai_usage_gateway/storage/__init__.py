"""
Storage layer for the AI Usage Gateway.

SQLite persistence for usage logs, quota records and cache entries.
"""
