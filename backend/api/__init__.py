"""Nightbot snapshot / restore API server."""
