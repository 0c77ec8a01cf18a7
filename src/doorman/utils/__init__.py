"""Shared utilities: logging, HTTP transport, retries and naming."""
