"""Health checks, recovery sweeps and the orchestrator that schedules them."""
