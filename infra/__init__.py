"""Infrastructure modules for the exit engine (store, alerting, metrics, scheduling)."""
