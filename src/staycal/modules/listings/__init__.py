"""Listing catalog."""
