"""File-system and process helpers used by the executor and orchestrator."""
