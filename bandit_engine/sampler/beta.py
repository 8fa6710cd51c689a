"""Beta(alpha, beta) deviates from a private random source.

Three regimes:

* both shapes below one: Johnk's rejection method, evaluated in log space so
  tiny shapes do not underflow to ``0/0``;
* one shape below one: ratio of Gamma deviates where the small-shape Gamma is
  boosted as ``Gamma(a + 1) * U**(1/a)``;
* both shapes at least one: ratio of Marsaglia-Tsang Gamma deviates, three
  attempts, then Cheng's BA acceptance-rejection sampler.

Non-positive shapes are a degenerate prior and yield a uniform draw.
"""
from __future__ import annotations

import math
import random
from typing import Optional

GAMMA_ATTEMPTS = 3
_LOG4 = math.log(4.0)
# math.exp overflows a double just above 709.
_EXP_LIMIT = 700.0


class BetaSampler:
    def __init__(self, seed: Optional[int] = None, *, rng: Optional[random.Random] = None):
        self._rng = rng if rng is not None else random.Random(seed)

    def uniform(self) -> float:
        return self._rng.random()

    def _open_uniform(self) -> float:
        """Uniform on the open interval (0, 1)."""
        while True:
            u = self._rng.random()
            if u > 0.0:
                return u

    def sample(self, alpha: float, beta: float) -> float:
        if not (alpha > 0.0 and beta > 0.0) or math.isinf(alpha) or math.isinf(beta):
            return self._rng.random()
        if alpha < 1.0 and beta < 1.0:
            return self._johnk(alpha, beta)
        if alpha < 1.0 or beta < 1.0:
            return self._gamma_ratio(alpha, beta)
        for _ in range(GAMMA_ATTEMPTS):
            ga = self._marsaglia_tsang(alpha)
            gb = self._marsaglia_tsang(beta)
            if ga is None or gb is None:
                continue
            total = ga + gb
            if total > 0.0:
                return _clamp(ga / total)
        return self._cheng(alpha, beta)

    def _johnk(self, alpha: float, beta: float) -> float:
        while True:
            log_x = math.log(self._open_uniform()) / alpha
            log_y = math.log(self._open_uniform()) / beta
            top = max(log_x, log_y)
            ex = math.exp(log_x - top)
            ey = math.exp(log_y - top)
            # accept iff x + y <= 1
            if top + math.log(ex + ey) <= 0.0:
                return _clamp(ex / (ex + ey))

    def _gamma_ratio(self, alpha: float, beta: float) -> float:
        while True:
            ga = self._gamma(alpha)
            gb = self._gamma(beta)
            total = ga + gb
            if total > 0.0 and math.isfinite(total):
                return _clamp(ga / total)

    def _gamma(self, shape: float) -> float:
        """Gamma(shape, 1) for any positive shape."""
        if shape < 1.0:
            boosted = self._gamma(shape + 1.0)
            return boosted * self._open_uniform() ** (1.0 / shape)
        while True:
            value = self._marsaglia_tsang(shape)
            if value is not None:
                return value

    def _marsaglia_tsang(self, shape: float) -> Optional[float]:
        """One Marsaglia-Tsang proposal for shape >= 1; None when rejected."""
        d = shape - 1.0 / 3.0
        c = 1.0 / math.sqrt(9.0 * d)
        x = self._rng.gauss(0.0, 1.0)
        v = 1.0 + c * x
        if v <= 0.0:
            return None
        v = v * v * v
        u = self._open_uniform()
        if u < 1.0 - 0.0331 * x ** 4:
            return d * v
        if math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v
        return None

    def _cheng(self, alpha: float, beta: float) -> float:
        """Cheng (1978) algorithm BA, valid for all positive shapes."""
        total = alpha + beta
        low = min(alpha, beta)
        if low <= 1.0:
            scale = 1.0 / low
        else:
            scale = math.sqrt((total - 2.0) / (2.0 * alpha * beta - total))
        shift = alpha + 1.0 / scale
        while True:
            u1 = self._open_uniform()
            u2 = self._open_uniform()
            if u1 >= 1.0:
                continue
            v = scale * math.log(u1 / (1.0 - u1))
            if v > _EXP_LIMIT:
                continue
            w = alpha * math.exp(v)
            if math.isinf(w):
                continue
            lhs = total * math.log(total / (beta + w)) + shift * v - _LOG4
            if lhs >= math.log(u1 * u1 * u2):
                return _clamp(w / (beta + w))


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


_default = BetaSampler()


def sample_beta(alpha: float, beta: float) -> float:
    """Draw from the module-wide sampler."""
    return _default.sample(alpha, beta)
