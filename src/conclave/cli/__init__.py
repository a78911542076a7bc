"""conclave command line interface."""
