"""mcpbridge command line interface."""
