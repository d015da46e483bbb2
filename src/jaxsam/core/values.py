"""
Variable assignment: Key -> current manifold-valued estimate.

`Values` holds one `Variable` per key. Variables are added explicitly with
`insert` and replaced wholesale by `update` or `retract`; a stored array is
never modified in place. `retract` and `local_coordinates` apply each
variable's chart (see `slam.manifold`), which is how the optimizer moves an
assignment by a tangent-space step and how tests measure the difference
between two assignments.
"""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional

import jax.numpy as jnp

from .errors import MissingVariableError
from .types import Key, Variable, as_key
from jaxsam.slam.manifold import check_value_shape, get_chart


class Values:
    """Ordered-by-key mapping from `Key` to `Variable`."""

    def __init__(self, variables: Optional[Mapping[Key, Variable]] = None) -> None:
        self._vars: Dict[Key, Variable] = dict(variables) if variables else {}

    # --- construction ---

    def insert(self, key, var_type: str, value) -> Key:
        key = as_key(key)
        if key in self._vars:
            raise ValueError(f"Variable {key} already exists")
        value = jnp.asarray(value, dtype=jnp.float64)
        get_chart(var_type)
        check_value_shape(var_type, value)
        self._vars[key] = Variable(key=key, type=var_type, value=value)
        return key

    def update(self, key, value) -> None:
        key = as_key(key)
        var = self._variable(key)
        value = jnp.asarray(value, dtype=jnp.float64)
        check_value_shape(var.type, value)
        self._vars[key] = Variable(key=key, type=var.type, value=value)

    def copy(self) -> "Values":
        return Values(self._vars)

    # --- access ---

    def _variable(self, key) -> Variable:
        key = as_key(key)
        try:
            return self._vars[key]
        except KeyError:
            raise MissingVariableError(key) from None

    def at(self, key) -> jnp.ndarray:
        return self._variable(key).value

    def __getitem__(self, key) -> jnp.ndarray:
        return self.at(key)

    def type_of(self, key) -> str:
        return self._variable(key).type

    def dim(self, key) -> int:
        var = self._variable(key)
        return get_chart(var.type).tangent_dim(var.value)

    def keys(self):
        return sorted(self._vars)

    def __contains__(self, key) -> bool:
        return as_key(key) in self._vars

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._vars)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}: {self._vars[k].type}" for k in self.keys())
        return f"Values({inner})"

    # --- manifold operations ---

    def retract(self, delta: Mapping[Key, jnp.ndarray]) -> "Values":
        """
        New assignment with every variable moved by its chart:
        x_k ⊕ delta[k]. Keys missing from `delta` are carried over unchanged.
        """
        out: Dict[Key, Variable] = dict(self._vars)
        for key, d in delta.items():
            var = self._variable(key)
            chart = get_chart(var.type)
            new_value = chart.retract(var.value, jnp.asarray(d))
            out[key] = Variable(key=key, type=var.type, value=new_value)
        return Values(out)

    def local_coordinates(self, other: "Values") -> Dict[Key, jnp.ndarray]:
        """Tangent-space difference other ⊖ self, per key of self."""
        result: Dict[Key, jnp.ndarray] = {}
        for key in self.keys():
            var = self._vars[key]
            chart = get_chart(var.type)
            result[key] = chart.local(var.value, other.at(key))
        return result

    def equals(self, other: "Values", tol: float = 1e-9) -> bool:
        if self.keys() != other.keys():
            return False
        for key in self.keys():
            if self.type_of(key) != other.type_of(key):
                return False
            if not bool(jnp.allclose(self.at(key), other.at(key), atol=tol, rtol=0.0)):
                return False
        return True
