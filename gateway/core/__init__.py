"""Agent engine: upstream stream parsing, tool-call folding, fallback detection,
self-correcting tool execution and the iteration controller."""
