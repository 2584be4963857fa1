"""Shared state of the gateway: credential directory and trust store."""
