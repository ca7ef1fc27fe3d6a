"""Bundled renderer templates."""
