"""Kernel services (write side)."""
