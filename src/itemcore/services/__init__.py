"""Services composing the item orchestrator."""
