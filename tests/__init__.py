"""Tests for Clinical Store."""
