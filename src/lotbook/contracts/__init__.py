"""Wire contracts (JSON Schema) for events published by the ledger."""
