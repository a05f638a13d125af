"""Batch analytics: segmentation, threshold search, probabilities and simulation."""
