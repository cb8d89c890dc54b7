"""Vocabulary tutor engine: history normalization, capabilities, prompts."""
