"""Persistence implementations for events and tenants."""
