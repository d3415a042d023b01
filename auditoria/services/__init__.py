"""Audit engine services."""
