"""Manifold charts, noise models and measurement residuals."""
