# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
jaxsam: manifold-valued nonlinear least squares on factor graphs, in JAX.

Importing the package switches JAX to double precision. The closed-form group
operations and the optimizer's error checks assume float64 throughout.
"""

import jax

jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"
