"""Job state persistence: authoritative JSON status files plus a SQLite mirror."""
