"""Command-line interface for TrueNAS Block."""
