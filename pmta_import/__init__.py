"""Import PowerMTA accounting logs over SSH into a queryable in-memory cache."""

__version__ = "0.1.0"
