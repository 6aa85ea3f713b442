"""
Operations Layer

Business logic operations that compose database methods for multi-step
workflows. Each operation accepts an optional session so several of them can
share one transaction.

- EntryOperations: roster registration and holdings snapshots
"""
