"""modechat: multi-mode conversational relay for upstream LLMs."""

__version__ = "0.1.0"
