"""
VM state encodings and persistence.

This package contains:
- codec: Migration buffer and snapshot block formats
- snapshot: Reading and writing snapshot files
"""
