"""Project version constants.

Logged by the CLI so ingest runs can be traced back to an engine and table
schema version.
"""

ENGINE_NAME: str = "papergraph"
ENGINE_VERSION: str = "0.1.0"

SCHEMA_VERSION: int = 1
