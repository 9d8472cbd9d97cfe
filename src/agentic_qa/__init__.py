"""Agentic QA core package."""

from .config import AgentConfig, RetrievalConfig, Settings, get_settings

__all__ = ["AgentConfig", "RetrievalConfig", "Settings", "get_settings"]
