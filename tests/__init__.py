"""Tests for the subtitle tonemapper."""
