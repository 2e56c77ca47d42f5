"""Outbound notification senders."""
