"""SQLite storage primitives shared by ledger backends."""
