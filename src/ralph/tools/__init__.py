"""Thin wrappers around external command-line tools."""
