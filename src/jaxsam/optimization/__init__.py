"""Orderings, linear elimination and nonlinear optimizers."""
