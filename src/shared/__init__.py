"""Shared code for the service and the workers."""
