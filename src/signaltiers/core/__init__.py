"""Cross-cutting infrastructure: configuration, logging, persistence, errors."""
