"""Execution history analytics and lesson learning."""
