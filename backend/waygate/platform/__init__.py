"""Platform-level primitives: errors and secrets."""
