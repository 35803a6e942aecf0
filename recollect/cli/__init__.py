"""Command-line interface for operating a recollect deployment."""
