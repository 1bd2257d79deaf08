"""REST API for the coordination layer."""
