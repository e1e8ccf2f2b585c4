"""Goal-driven task orchestration: planning, resilient execution, learning."""

__version__ = "0.1.0"
