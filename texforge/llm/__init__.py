"""AI provider access: clients, registry, prompts and source extraction."""
