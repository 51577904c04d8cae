"""Core utilities: DSN handling, configuration, logging, best-effort fan-out."""
