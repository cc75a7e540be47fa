"""Kernel services: flush-only writers used inside module transactions."""
