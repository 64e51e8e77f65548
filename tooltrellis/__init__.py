"""
Tooltrellis - tool-calling orchestration core for conversational agents.

Drives a bounded sequence of model calls and external-tool invocations,
keeps every message sequence handed to the completion backend structurally
valid, and always produces a final user-visible answer.
"""

__version__ = "0.1.0"
