"""Terminal output for jobgraph."""
