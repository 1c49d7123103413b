"""
Streaming pipeline: SSE decoding, thinking/answer splitting and reconciliation
of deltas into a transcript.

    from streaming_chat.streaming import StreamReconciler, decode_sse_stream, split_thinking
"""

from streaming_chat.streaming.decoder import SSEDecoder, decode_sse_stream
from streaming_chat.streaming.reconciler import ReconcileOutcome, ReconcilerState, StreamReconciler, StreamSession
from streaming_chat.streaming.thinking import ThinkingSplit, split_thinking

__all__ = [
    "ReconcileOutcome",
    "ReconcilerState",
    "SSEDecoder",
    "StreamReconciler",
    "StreamSession",
    "ThinkingSplit",
    "decode_sse_stream",
    "split_thinking",
]
