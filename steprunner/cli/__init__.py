"""Command line interface for steprunner."""
