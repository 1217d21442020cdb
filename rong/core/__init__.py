"""Configuration for rong."""
