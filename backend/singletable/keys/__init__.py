"""Composite key composition and the per-entity access pattern registry."""
