"""Version constraints, package identifiers and metadata."""
