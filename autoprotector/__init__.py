"""Protect the default branch of new repositories in a GitHub organization."""

__version__ = "0.1.0"
