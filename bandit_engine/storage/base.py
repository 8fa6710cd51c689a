"""Store interface for arms, statistics, assignments and optional extensions.

Every backend exposes the same surface. Delayed-reward and objective
operations are optional: a backend that cannot serve them inherits the
defaults below, which raise ``UnsupportedError`` so callers can degrade the
feature instead of failing the request.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from ..common.errors import UnsupportedError
from ..contextual.linucb import LinUCBModel
from ..delayed.schemas import ConversionLink, PendingReward
from ..objectives.schemas import ArmObjectiveStats, ObjectiveType
from ..thompson.schemas import Arm, ArmStats, Assignment


class BanditStore:
    supports_delayed = False
    supports_objectives = False

    # arms and statistics

    async def add_arm(self, arm: Arm) -> None:
        raise NotImplementedError

    async def get_arms(self, experiment_id: str) -> List[Arm]:
        raise NotImplementedError

    async def update_arm_weight(self, arm_id: str, weight: float) -> None:
        raise NotImplementedError

    async def get_arm_stats(self, arm_id: str) -> Optional[ArmStats]:
        raise NotImplementedError

    async def save_arm_stats(self, stats: ArmStats) -> None:
        raise NotImplementedError

    async def apply_reward(self, arm_id: str, reward: float, ts: Optional[datetime] = None) -> ArmStats:
        """Atomically apply one Beta-Bernoulli update and return the new stats."""
        raise NotImplementedError

    # sticky assignments

    async def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        raise NotImplementedError

    async def save_assignment(self, assignment: Assignment) -> None:
        raise NotImplementedError

    # contextual models

    async def get_linucb_model(self, arm_id: str) -> Optional[LinUCBModel]:
        raise NotImplementedError

    async def save_linucb_model(self, model: LinUCBModel) -> None:
        raise NotImplementedError

    # delayed rewards (optional)

    async def save_pending_reward(self, pending: PendingReward) -> None:
        raise UnsupportedError(f"{type(self).__name__} does not store pending rewards")

    async def get_pending_reward(self, pending_id: str) -> Optional[PendingReward]:
        raise UnsupportedError(f"{type(self).__name__} does not store pending rewards")

    async def get_pending_rewards_by_user(
        self, user_id: str, experiment_id: Optional[str] = None
    ) -> List[PendingReward]:
        raise UnsupportedError(f"{type(self).__name__} does not store pending rewards")

    async def get_expired_pending_rewards(self, now: datetime, limit: int) -> List[PendingReward]:
        raise UnsupportedError(f"{type(self).__name__} does not store pending rewards")

    async def count_expired_pending_rewards(self, now: datetime) -> int:
        raise UnsupportedError(f"{type(self).__name__} does not store pending rewards")

    async def save_conversion_link(self, link: ConversionLink) -> None:
        raise UnsupportedError(f"{type(self).__name__} does not store conversion links")

    async def get_conversion_links(self, transaction_id: str) -> List[ConversionLink]:
        raise UnsupportedError(f"{type(self).__name__} does not store conversion links")

    # objective statistics (optional)

    async def get_objective_stats(self, arm_id: str, objective: ObjectiveType) -> Optional[ArmObjectiveStats]:
        raise UnsupportedError(f"{type(self).__name__} does not store objective stats")

    async def save_objective_stats(self, stats: ArmObjectiveStats) -> None:
        raise UnsupportedError(f"{type(self).__name__} does not store objective stats")

    async def get_all_objective_stats(self, arm_id: str) -> Dict[ObjectiveType, ArmObjectiveStats]:
        raise UnsupportedError(f"{type(self).__name__} does not store objective stats")

    async def apply_objective_reward(
        self,
        arm_id: str,
        objective: ObjectiveType,
        reward: float,
        ltv: Optional[float] = None,
    ) -> ArmObjectiveStats:
        """Atomically record one reward against an objective and return the new stats."""
        raise UnsupportedError(f"{type(self).__name__} does not store objective stats")
