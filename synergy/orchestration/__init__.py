"""Task lifecycle, scheduling and governance for the agent organization."""
