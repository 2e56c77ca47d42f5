"""Agent-facing tool layer."""
