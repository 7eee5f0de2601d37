"""Agent runner implementations."""
