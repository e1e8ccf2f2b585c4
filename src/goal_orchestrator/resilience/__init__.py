"""Retry, circuit breaking, error classification and checkpoints."""
