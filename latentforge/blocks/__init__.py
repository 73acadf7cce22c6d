"""Registered building blocks: schedulers and diffuser strategies."""
