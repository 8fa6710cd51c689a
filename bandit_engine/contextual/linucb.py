"""Disjoint LinUCB selector over the fixed user feature vector."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from ..common.clock import isoformat, parse_iso, utcnow
from ..common.errors import CACHE_ERRORS, BanditError, NotFoundError
from ..common.locks import KeyedLocks
from ..thompson.schemas import Arm
from .context import UserContext
from .features import FEATURE_DIM, build_feature_vector
from .linalg import solve

logger = logging.getLogger(__name__)

DEFAULT_EXPLORATION_ALPHA = 0.3


@dataclass
class LinUCBModel:
    arm_id: str
    a: np.ndarray
    b: np.ndarray
    theta: np.ndarray
    samples: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def fresh(cls, arm_id: str, dim: int = FEATURE_DIM) -> "LinUCBModel":
        return cls(arm_id=arm_id, a=np.eye(dim), b=np.zeros(dim), theta=np.zeros(dim))

    @property
    def dim(self) -> int:
        return int(self.b.shape[0])

    def ucb(self, x: np.ndarray, alpha: float) -> float:
        prediction = float(self.theta @ x)
        diag = np.diag(self.a)
        mask = diag > 0
        # Diagonal of A stands in for A^-1.
        uncertainty = float(np.sum((x[mask] ** 2) / diag[mask]))
        return prediction + alpha * math.sqrt(uncertainty)

    def to_dict(self) -> Dict[str, object]:
        return {
            "arm_id": self.arm_id,
            "a": self.a.tolist(),
            "b": self.b.tolist(),
            "theta": self.theta.tolist(),
            "samples": self.samples,
            "updated_at": isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "LinUCBModel":
        return cls(
            arm_id=str(payload["arm_id"]),
            a=np.asarray(payload["a"], dtype=float),
            b=np.asarray(payload["b"], dtype=float),
            theta=np.asarray(payload["theta"], dtype=float),
            samples=int(payload.get("samples", 0)),
            updated_at=parse_iso(payload.get("updated_at")),
        )


class LinUCBSelector:
    def __init__(self, store, *, alpha: float = DEFAULT_EXPLORATION_ALPHA, dim: int = FEATURE_DIM):
        self.store = store
        self.dim = dim
        self._alpha = alpha if alpha > 0 else DEFAULT_EXPLORATION_ALPHA
        self._locks = KeyedLocks()

    @property
    def exploration_alpha(self) -> float:
        return self._alpha

    def set_exploration_alpha(self, alpha: float) -> None:
        if alpha <= 0:
            logger.warning("ignoring non-positive exploration alpha %s", alpha)
            return
        self._alpha = alpha

    async def get_model(self, arm_id: str) -> LinUCBModel:
        model = await self.store.get_linucb_model(arm_id)
        if model is None:
            return LinUCBModel.fresh(arm_id, self.dim)
        return model

    async def select_arm(
        self,
        experiment_id: str,
        context: UserContext,
        *,
        arms: Optional[Sequence[Arm]] = None,
        alpha: Optional[float] = None,
    ) -> str:
        if arms is None:
            arms = await self.store.get_arms(experiment_id)
        if not arms:
            raise NotFoundError(f"no arms for experiment {experiment_id}")
        explore = alpha if alpha is not None and alpha > 0 else self._alpha
        x = build_feature_vector(context)
        best_arm: Optional[str] = None
        best_ucb = -math.inf
        for arm in arms:
            try:
                model = await self.get_model(arm.id)
            except (BanditError, ValueError, *CACHE_ERRORS) as exc:
                logger.warning("linucb model unavailable for arm %s: %s", arm.id, exc)
                continue
            ucb = model.ucb(x, explore)
            logger.debug("arm %s (%s) ucb=%.6f", arm.id, arm.name, ucb)
            if ucb > best_ucb:
                best_ucb = ucb
                best_arm = arm.id
        if best_arm is None:
            return arms[0].id
        return best_arm

    async def update(self, arm_id: str, context: UserContext, reward: float) -> LinUCBModel:
        x = build_feature_vector(context)
        async with self._locks.hold(arm_id):
            current = await self.get_model(arm_id)
            a = current.a + np.outer(x, x)
            b = current.b + reward * x
            model = LinUCBModel(
                arm_id=arm_id,
                a=a,
                b=b,
                theta=solve(a, b),
                samples=current.samples + 1,
                updated_at=utcnow(),
            )
            await self.store.save_linucb_model(model)
        logger.debug("linucb model for arm %s updated (samples=%d)", arm_id, model.samples)
        return model

    async def get_model_stats(self, arm_id: str) -> Dict[str, object]:
        model = await self.get_model(arm_id)
        return {
            "arm_id": arm_id,
            "samples": model.samples,
            "dimension": model.dim,
            "theta_norm": float(np.linalg.norm(model.theta)),
            "exploration_alpha": self._alpha,
            "updated_at": isoformat(model.updated_at),
        }
