"""Agent turn execution: locks, context budget, stream classification, limiter."""
