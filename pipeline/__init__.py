"""Pipeline components.

This package contains the pure stages of record ingestion: line-delimited
record reading, the admission filter and entity derivation. Writing to the
sink lives in ``apps.worker``.
"""
