"""Utility helpers for LLMEval."""

from llmeval.utils.logging import setup_logging

__all__ = ["setup_logging"]
