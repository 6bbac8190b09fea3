"""Shared infrastructure: configuration, logging, clock, storage, metrics and alerts."""
