"""Post-migration consistency verification for MongoDB clusters."""

__version__ = "1.0.0"
