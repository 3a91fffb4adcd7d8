"""Dynamical state of a Hamiltonian trajectory and caching of derived values."""

from __future__ import annotations

import copy
from functools import wraps
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any


def _cache_key(system: Any, method: Callable | str) -> tuple[str, int]:
    name = method if isinstance(method, str) else method.__name__
    return (f"{type(system).__name__}.{name}", id(system))


def _register_dependencies(state: ChainState, depends_on, keys):
    for key in keys:
        if key not in state._cache:
            for dep in depends_on:
                state._dependencies[dep].add(key)


def cache_in_state(*depends_on: str) -> Callable:
    """Memoizing decorator for system methods.

    The value returned by the decorated method is cached in the `ChainState`
    passed to it and reused until one of the state variables named in
    `depends_on` is reassigned.

    Args:
       *depends_on: Names of the state variables, e.g. 'pos' or 'mom', the value
           returned by the method depends on.
    """

    def cache_in_state_decorator(method):
        @wraps(method)
        def wrapper(self, state):
            key = _cache_key(self, method)
            _register_dependencies(state, depends_on, (key,))
            if state._cache.get(key) is None:
                state._cache[key] = method(self, state)
            return state._cache[key]

        return wrapper

    return cache_in_state_decorator


def cache_in_state_with_aux(
    depends_on: str | tuple[str, ...],
    auxiliary_outputs: str | tuple[str, ...],
) -> Callable:
    """Memoizing decorator for system methods with possible auxiliary outputs.

    As :py:func:`cache_in_state` but the wrapped method may return a tuple whose
    trailing entries are the values of other cached methods, named in
    `auxiliary_outputs`. The typical case is a gradient function which also
    returns the value of the function being differentiated.

    Args:
        depends_on: Name or names of state variables the outputs depend on.
        auxiliary_outputs: Name or names of the cached methods corresponding to
            any auxiliary outputs, in the order they are returned.
    """
    if isinstance(depends_on, str):
        depends_on = (depends_on,)
    if isinstance(auxiliary_outputs, str):
        auxiliary_outputs = (auxiliary_outputs,)

    def cache_in_state_with_aux_decorator(method):
        @wraps(method)
        def wrapper(self, state):
            prim_key = _cache_key(self, method)
            keys = [prim_key] + [_cache_key(self, a) for a in auxiliary_outputs]
            _register_dependencies(state, depends_on, keys)
            if state._cache.get(prim_key) is None:
                vals = method(self, state)
                if isinstance(vals, tuple):
                    for k, v in zip(keys, vals):
                        state._cache[k] = v
                else:
                    state._cache[prim_key] = vals
            return state._cache[prim_key]

        return wrapper

    return cache_in_state_with_aux_decorator


class ChainState:
    """Dynamical state of a Hamiltonian Monte Carlo chain.

    Records the position `pos`, momentum `mom` and integration direction `dir`
    variables and caches quantities derived from them, such as the negative log
    density and its gradient, so they are not recomputed while the variables
    they depend on are unchanged.
    """

    def __init__(self, *, _dependencies=None, _cache=None, **variables):
        """
        Kwargs:
            **variables: State variables, e.g. `pos`, `mom` and `dir`.
            _dependencies: For internal use. Mapping from variable names to sets
                of cache keys depending on them.
            _cache: For internal use. Mapping from cache keys to cached values.
        """
        # Write to __dict__ directly as __setattr__ relies on these attributes
        self.__dict__["_variables"] = variables
        if _dependencies is None:
            _dependencies = {name: set() for name in variables}
        self.__dict__["_dependencies"] = _dependencies
        self.__dict__["_cache"] = {} if _cache is None else _cache

    def __getattr__(self, name: str) -> Any:
        if name in self._variables:
            return self._variables[name]
        msg = f"'{type(self).__name__}' object has no attribute '{name}'"
        raise AttributeError(msg)

    def __setattr__(self, name: str, value: Any):
        if name in self._variables:
            self._variables[name] = value
            for dep in self._dependencies[name]:
                self._cache[dep] = None
        else:
            super().__setattr__(name, value)

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def copy(self) -> ChainState:
        """Create a copy of the state with independent copies of the variables."""
        return type(self)(
            _dependencies=self._dependencies,
            _cache=self._cache.copy(),
            **{name: copy.copy(val) for name, val in self._variables.items()},
        )

    def __repr__(self) -> str:
        variables = ", ".join(f"{k}={v}" for k, v in self._variables.items())
        return f"{type(self).__name__}({variables})"
