"""Tests for the StuffTracker integration."""
