"""Describe container requests and drive Docker Compose stacks from tests."""

__version__ = "0.1.0"
__all__ = ["container", "compose_local", "compose_api"]