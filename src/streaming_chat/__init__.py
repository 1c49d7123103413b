"""
Streaming chat toolkit.

Talks to OpenAI-compatible chat backends over server-sent events, folds the
streamed deltas into an in-memory transcript (splitting hidden "thinking"
regions from the visible answer), and persists finished turns through
pluggable repositories. 'ChatController' is the entry point.
"""

__version__ = "0.1.0"
