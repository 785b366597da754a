"""Order normalization and message formatting."""
