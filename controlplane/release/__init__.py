"""Blue/green release: health gate and release orchestrator."""
