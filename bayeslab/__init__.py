"""Discover and replay Bayesian sensor observations from Home Assistant history."""

__version__ = "0.4.0"
