"""
changegate — gated change acceptance for LLM-generated code.

Plans a request into tasks, generates file changes per task, and only
accepts them once their imports, dependencies and review have cleared.
"""

__version__ = "0.4.0"
__codename__ = "CHANGEGATE"
