"""Kernel utilities."""
