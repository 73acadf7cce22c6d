# latentforge/core/diffusion/__init__.py
"""Scheduler and diffuser base classes."""
