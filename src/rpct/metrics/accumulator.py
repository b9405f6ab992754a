from __future__ import annotations

from typing import Sequence

import numpy as np

PROBABILITIES: tuple[float, ...] = (0.5, 0.95, 0.99, 0.999)


class LatencyAccumulator:
    """Streaming mean, max and quantiles over latency samples.

    Quantiles use the extended P-square algorithm: ``2m + 3`` markers track
    the requested ``m`` probabilities, the midpoints between them and both
    extremes. Marker heights are adjusted with a piecewise-parabolic
    prediction, so memory stays constant regardless of the sample count.
    """

    __slots__ = (
        "probabilities",
        "_count",
        "_mean",
        "_max",
        "_heights",
        "_positions",
        "_desired",
        "_increments",
    )

    def __init__(self, probabilities: Sequence[float] = PROBABILITIES) -> None:
        probs = tuple(float(p) for p in probabilities)
        if not probs or any(not 0.0 < p < 1.0 for p in probs) or list(probs) != sorted(set(probs)):
            msg = f"Probabilities must be strictly increasing values in (0, 1), got {probabilities!r}"
            raise ValueError(msg)
        self.probabilities = probs
        num_markers = 2 * len(probs) + 3
        marker_probs = np.zeros(num_markers)
        marker_probs[-1] = 1.0
        marker_probs[2:-1:2] = probs
        marker_probs[1:-1:2] = (marker_probs[0:-2:2] + marker_probs[2::2]) / 2.0
        self._count = 0
        self._mean = 0.0
        self._max = 0.0
        self._heights = np.zeros(num_markers)
        self._positions = np.arange(1.0, num_markers + 1.0)
        self._desired = 1.0 + (num_markers - 1) * marker_probs
        self._increments = marker_probs

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean(self) -> float:
        return self._mean

    @property
    def max(self) -> float:
        return self._max

    @property
    def _num_markers(self) -> int:
        return len(self._heights)

    def add(self, value: float) -> None:
        value = float(value)
        self._count += 1
        self._mean += (value - self._mean) / self._count
        if self._count == 1 or value > self._max:
            self._max = value

        n = self._num_markers
        if self._count <= n:
            self._heights[self._count - 1] = value
            if self._count == n:
                self._heights.sort()
            return

        heights = self._heights
        if value < heights[0]:
            heights[0] = value
            cell = 1
        elif value >= heights[-1]:
            heights[-1] = value
            cell = n - 1
        else:
            cell = int(np.searchsorted(heights, value, side="right"))
        self._positions[cell:] += 1.0
        self._desired += self._increments
        self._adjust()

    def _adjust(self) -> None:
        heights = self._heights
        pos = self._positions
        for i in range(1, self._num_markers - 1):
            d = self._desired[i] - pos[i]
            dp = pos[i + 1] - pos[i]
            dm = pos[i - 1] - pos[i]
            if not ((d >= 1.0 and dp > 1.0) or (d <= -1.0 and dm < -1.0)):
                continue
            sign = 1.0 if d > 0 else -1.0
            hp = (heights[i + 1] - heights[i]) / dp
            hm = (heights[i - 1] - heights[i]) / dm
            h = heights[i] + sign / (dp - dm) * ((sign - dm) * hp + (dp - sign) * hm)
            if heights[i - 1] < h < heights[i + 1]:
                heights[i] = h
            elif sign > 0:
                heights[i] += hp
            else:
                heights[i] -= hm
            pos[i] += sign

    def quantile(self, probability: float) -> float:
        try:
            index = self.probabilities.index(probability)
        except ValueError:
            msg = f"Probability {probability} is not tracked"
            raise KeyError(msg) from None
        if self._count == 0:
            return 0.0
        if self._count < self._num_markers:
            return float(np.quantile(self._heights[: self._count], probability))
        return float(self._heights[2 * index + 2])

    def quantiles(self) -> dict[float, float]:
        return {p: self.quantile(p) for p in self.probabilities}
