"""Shared utilities: configuration, logging, errors and validation."""
