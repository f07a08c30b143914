"""Job dispatch and node liveness engine."""
