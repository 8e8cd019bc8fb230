"""Synthetic scan session generation."""
