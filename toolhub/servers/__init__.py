"""Example tool servers, runnable with ``python -m toolhub.servers.<name>``."""
