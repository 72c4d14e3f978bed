"""Service layer for the incident lifecycle."""
