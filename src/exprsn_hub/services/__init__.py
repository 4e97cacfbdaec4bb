"""Service layer for the Exprsn hub."""
