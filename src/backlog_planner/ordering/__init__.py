"""Dependency-aware task ordering engine."""
