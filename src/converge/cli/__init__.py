"""Command line interface for converge."""
