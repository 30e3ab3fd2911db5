"""Command-line interface (``shipyard``)."""
