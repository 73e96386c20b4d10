"""Tendril CLI support: configuration loading."""
