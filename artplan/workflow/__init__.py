"""Plan lifecycle and orchestration of planning passes."""
