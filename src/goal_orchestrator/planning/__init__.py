"""Goal parsing, plan generation and execution-order optimization."""
