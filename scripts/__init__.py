"""Command-line entry points for landface."""
