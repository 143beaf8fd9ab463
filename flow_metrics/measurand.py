# flow_metrics/measurand.py
# -*- coding: utf-8 -*-
"""
Running mean / standard deviation of a scalar (Welford's update).

Not thread-safe; the owning pipeline serializes access.
"""

from __future__ import annotations

import math


class Measurand:
    __slots__ = ("n", "_mean", "_m2")

    def __init__(self):
        self.n = 0
        self._mean = 0.0
        self._m2 = 0.0

    def reset(self) -> None:
        self.n = 0
        self._mean = 0.0
        self._m2 = 0.0

    def update(self, sample: float) -> None:
        self.n += 1
        delta = float(sample) - self._mean
        self._mean += delta / self.n
        self._m2 += delta * (float(sample) - self._mean)

    def get_mean(self) -> float:
        return self._mean

    def get_variance(self) -> float:
        # sample variance; 0.0 until two samples have been seen
        if self.n < 2:
            return 0.0
        return self._m2 / (self.n - 1)

    def get_std_dev(self) -> float:
        return math.sqrt(self.get_variance())

    def __str__(self) -> str:
        return f"{self.get_mean():.4g} +/- {self.get_std_dev():.4g} (n={self.n})"
