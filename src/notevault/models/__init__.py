"""Data models for Notevault."""
