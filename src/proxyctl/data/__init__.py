"""Packaged data files (nginx templates)."""
