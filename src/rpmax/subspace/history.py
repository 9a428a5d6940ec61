"""
Module: rpmax.subspace.history
------------------------------

Fixed-capacity window of iterate deltas.

The window is a circular buffer over a preallocated `(nsample, n)` array.
Eviction of the oldest delta only advances the logical head, so no large
vector is ever copied or reallocated.

Functions
---------
- `history_insert`:
    Append a delta, evicting the oldest one when full
- `history_reset`:
    Keep only the most recent delta
- `history_latest`:
    Most recently inserted delta
- `history_samples`:
    Stored deltas in insertion order
- `history_is_full`:
    Whether the window reached its capacity
"""

import jax.numpy as jnp
from jaxtyping import Array, Bool, Float, Int

from rpmax.subspace.subspace_types import HistoryWindow


def _capacity(window: HistoryWindow) -> int:
    return window.samples.shape[0]


def history_insert(
    window: HistoryWindow,
    delta: Float[Array, " n"],
) -> HistoryWindow:
    """
    Description
    -----------
    Append a delta vector to the window.

    If the window is full the oldest delta is evicted: its slot receives
    the new delta and the head advances by one.

    Parameters
    ----------
    - `window` (HistoryWindow):
        Current window.
    - `delta` (Float[Array, " n"]):
        New delta vector.

    Returns
    -------
    - `new_window` (HistoryWindow):
        Window with the delta appended.

    Flow
    ----
    1. Locate the slot after the newest entry (equal to head when full)
    2. Write the delta into that slot
    3. Advance head when full, otherwise grow the length
    """
    capacity: int = _capacity(window)
    full: Bool[Array, ""] = window.length == capacity
    tail: Int[Array, ""] = (window.head + window.length) % capacity
    samples: Float[Array, "nsample n"] = window.samples.at[tail].set(
        delta.astype(window.samples.dtype)
    )
    head: Int[Array, ""] = jnp.where(full, (window.head + 1) % capacity, window.head)
    length: Int[Array, ""] = jnp.minimum(window.length + 1, capacity)
    return HistoryWindow(samples=samples, head=head, length=length)


def history_latest(
    window: HistoryWindow,
) -> Float[Array, " n"]:
    """Most recently inserted delta. Undefined (stale storage) when empty."""
    capacity: int = _capacity(window)
    slot: Int[Array, ""] = (window.head + jnp.maximum(window.length - 1, 0)) % capacity
    return window.samples[slot]


def history_reset(
    window: HistoryWindow,
) -> HistoryWindow:
    """
    Description
    -----------
    Discard all history except the most recent delta.

    The retained delta moves to slot 0 and the head returns to 0.
    The storage itself is kept.

    Parameters
    ----------
    - `window` (HistoryWindow):
        Current window.

    Returns
    -------
    - `new_window` (HistoryWindow):
        Window holding at most one delta.
    """
    latest: Float[Array, " n"] = history_latest(window)
    samples: Float[Array, "nsample n"] = window.samples.at[0].set(latest)
    return HistoryWindow(
        samples=samples,
        head=jnp.zeros_like(window.head),
        length=jnp.minimum(window.length, 1),
    )


def history_samples(
    window: HistoryWindow,
) -> Float[Array, "k n"]:
    """
    Description
    -----------
    Stored deltas in insertion order, oldest first.

    Requires a concrete window (not traced), since the number of
    returned rows equals the current length.

    Parameters
    ----------
    - `window` (HistoryWindow):
        Current window.

    Returns
    -------
    - `ordered` (Float[Array, "k n"]):
        One delta per row, `k = length`.
    """
    capacity: int = _capacity(window)
    length: int = int(window.length)
    slots: Int[Array, " k"] = (window.head + jnp.arange(length)) % capacity
    return window.samples[slots]


def history_is_full(
    window: HistoryWindow,
) -> Bool[Array, ""]:
    return window.length == _capacity(window)
