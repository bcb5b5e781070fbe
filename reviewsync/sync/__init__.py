"""Review sync engine: cursor, upserter, status records and the orchestrator."""
