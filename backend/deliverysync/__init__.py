"""Delivery platform integration backend."""
