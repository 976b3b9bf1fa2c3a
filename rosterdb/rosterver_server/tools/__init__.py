"""Operator tools for the roster server."""
