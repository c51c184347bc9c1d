"""SQLite storage layer shared by orchestrator and credit ledger."""
