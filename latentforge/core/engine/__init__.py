# latentforge/core/engine/__init__.py
"""Run engine: pipeline state, capability presets and the orchestrator.

Import the orchestrator from ``latentforge.core.engine.orchestrator``; this
package stays import-light because the schedulers depend on ``state``.
"""
