"""Typed contracts shared across the gateway (JSON aliases, OpenAI-format shapes)."""
