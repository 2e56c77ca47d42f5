"""Payment processor clients."""
