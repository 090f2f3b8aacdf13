"""Diagnose, repair and mirror a containerized local Ollama stack."""

__version__ = "0.1.0"
