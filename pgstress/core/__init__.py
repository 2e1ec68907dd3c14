"""Core harness components."""
