"""Data models for vipalloc."""
