"""Small helpers for naming, parsing and formatting."""
