"""Shared infrastructure: config, logging, storage, providers, task execution."""
