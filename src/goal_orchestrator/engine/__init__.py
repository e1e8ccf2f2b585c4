"""Top-level orchestration engine and its pluggable collaborators."""
