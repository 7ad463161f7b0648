"""Integration tests that drive a real git repository."""
