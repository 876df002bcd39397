"""Folder name normalization."""
