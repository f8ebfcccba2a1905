"""Image converter backend."""
