"""Core primitives: errors, logging and settings."""
