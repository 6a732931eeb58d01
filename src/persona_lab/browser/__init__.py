"""Live-page automation used by agent-mode episodes."""
