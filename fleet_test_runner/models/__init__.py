"""Data models for execution requests and results."""
