"""Lane-bucketed backlog summaries."""
