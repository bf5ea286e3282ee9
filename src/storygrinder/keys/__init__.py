"""API key loading backends."""
