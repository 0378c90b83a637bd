"""Client side of the chat stream: SSE consumption, tag-aware display, render batching."""
