"""Nightly pricing."""
