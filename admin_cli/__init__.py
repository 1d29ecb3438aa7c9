"""Command line entry points for tablet volume administration."""
