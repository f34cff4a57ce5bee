"""Core module for Clinical Store."""
