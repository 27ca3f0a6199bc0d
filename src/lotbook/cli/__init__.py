"""lotbook command line interface."""
