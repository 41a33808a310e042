"""GL evidence linking and FAR Part 31 cost allowability review."""

__version__ = "0.1.0"
