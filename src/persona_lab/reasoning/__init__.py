"""Persona reasoning: output models, validation, prompts and provider clients."""
