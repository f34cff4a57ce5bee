"""Utility helpers for Clinical Store."""
