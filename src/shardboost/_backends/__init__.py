"""Native training backends.

The orchestration layer never talks to a boosting library directly. It
builds matrices, trains and persists models through a `NativeBackend`.
The default backend wraps xgboost; select another with `set_backend()` or
the ``SHARDBOOST_BACKEND`` environment variable.
"""

from __future__ import annotations

import os
from typing import (
    TYPE_CHECKING, Any, Callable, ContextManager, Iterable, Mapping, Protocol,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._point import LabeledPoint


class NativeMatrix(Protocol):
    """A training matrix owned by native code; must be released with `delete()`."""

    def row_count(self) -> int: ...

    def set_base_margin(self, margin: NDArray) -> None: ...

    def set_group(self, group_sizes: NDArray) -> None: ...

    def set_weight(self, weights: NDArray) -> None: ...

    def delete(self) -> None: ...


class NativeBackend(Protocol):
    """Boundary to the native boosting library."""

    def matrix_from_points(
        self,
        points: Iterable[LabeledPoint],
        missing: float,
        cache_prefix: str | None = None,
    ) -> NativeMatrix:
        """Build a matrix from sparse points, consuming the iterator once."""
        ...

    def matrix_from_columns(
        self,
        features: NDArray,
        label: NDArray,
        missing: float,
        cache_prefix: str | None = None,
    ) -> NativeMatrix:
        """Build a matrix from a dense feature block and a label column."""
        ...

    def train(
        self,
        matrix: NativeMatrix,
        params: Mapping[str, Any],
        rounds: int,
        evals: Mapping[str, NativeMatrix],
        metrics_out: Mapping[str, NDArray],
        objective: Callable | None = None,
        eval_fn: Callable | None = None,
        early_stopping_rounds: int = 0,
        maximize: bool | None = None,
        previous_model: Any = None,
    ) -> Any:
        """Train until the model holds ``rounds`` rounds.

        Fills ``metrics_out[name][r]`` with the metric of ``evals[name]`` after
        round ``r``.
        """
        ...

    def communicator(self, env: Mapping[str, Any]) -> ContextManager:
        """Join the collective described by ``env`` for the duration of the block."""
        ...

    def num_rounds(self, model: Any) -> int: ...

    def model_fingerprint(self, model: Any) -> bytes: ...

    def save_model(self, model: Any, path: str) -> None: ...

    def load_model(self, path: str) -> Any: ...

    def predict(self, model: Any, features: NDArray, missing: float) -> NDArray: ...


# =============================================================================
# Backend Registry
# =============================================================================

def _make_xgboost() -> NativeBackend:
    from ._xgboost import XGBoostBackend
    return XGBoostBackend()


_FACTORIES: dict[str, Callable[[], NativeBackend]] = {
    "xgboost": _make_xgboost,
}

_BACKEND: NativeBackend | None = None


def get_backend() -> NativeBackend:
    """Get the active native backend, creating the default on first use."""
    global _BACKEND
    if _BACKEND is None:
        _BACKEND = _create(os.environ.get("SHARDBOOST_BACKEND", "xgboost"))
    return _BACKEND


def set_backend(backend: str | NativeBackend) -> None:
    """Set the native backend by name or instance."""
    global _BACKEND
    _BACKEND = _create(backend) if isinstance(backend, str) else backend


def _create(name: str) -> NativeBackend:
    name = name.lower()
    if name not in _FACTORIES:
        available = ", ".join(_FACTORIES)
        raise ValueError(f"Unknown backend '{name}'. Available: {available}")
    return _FACTORIES[name]()


__all__ = [
    "NativeBackend",
    "NativeMatrix",
    "get_backend",
    "set_backend",
]
