"""Service layer for Notevault."""
