"""Shared logging and tracing setup for the palette services."""
