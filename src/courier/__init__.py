"""Courier: credential-bound incremental sync for mail and calendar providers."""

__version__ = "0.1.0"
