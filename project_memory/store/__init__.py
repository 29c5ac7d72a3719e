"""
Dual-store persistence: relational fact rows (SQLite + FTS5) and their
embedding vectors (SQLite + numpy), kept consistent by the coordinator.
"""
