"""Direct message persistence and history endpoints."""
