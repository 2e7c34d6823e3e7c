"""HTTP API for the employee compliance engine."""
