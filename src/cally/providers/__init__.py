"""External calendar provider clients and push orchestration."""
