"""Primitives shared by the engine and the hub."""
