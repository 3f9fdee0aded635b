"""Babbler network services."""
