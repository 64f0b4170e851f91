"""Integration event gateway."""
