"""In-process store used in tests and sandboxes."""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import DefaultDict, Dict, List, Optional, Tuple

from ..common.clock import utcnow
from ..common.errors import NotFoundError
from ..common.locks import KeyedLocks
from ..contextual.linucb import LinUCBModel
from ..delayed.schemas import ConversionLink, PendingReward
from ..objectives.schemas import ArmObjectiveStats, ObjectiveType
from ..thompson.schemas import Arm, ArmStats, Assignment
from .base import BanditStore


class InMemoryBanditStore(BanditStore):
    supports_delayed = True
    supports_objectives = True

    def __init__(self):
        self.arms: Dict[str, Arm] = {}
        self.experiment_arms: DefaultDict[str, List[str]] = defaultdict(list)
        self.stats: Dict[str, ArmStats] = {}
        self.assignments: Dict[Tuple[str, str], Assignment] = {}
        self.models: Dict[str, dict] = {}
        self.pending: Dict[str, PendingReward] = {}
        self.links: List[ConversionLink] = []
        self.objectives: Dict[Tuple[str, ObjectiveType], ArmObjectiveStats] = {}
        self._locks = KeyedLocks()

    async def add_arm(self, arm: Arm) -> None:
        if arm.id not in self.arms:
            self.experiment_arms[arm.experiment_id].append(arm.id)
        self.arms[arm.id] = arm

    async def get_arms(self, experiment_id: str) -> List[Arm]:
        return [self.arms[arm_id] for arm_id in self.experiment_arms.get(experiment_id, [])]

    async def update_arm_weight(self, arm_id: str, weight: float) -> None:
        arm = self.arms.get(arm_id)
        if arm is None:
            raise NotFoundError(f"unknown arm {arm_id}")
        arm.weight = weight

    async def get_arm_stats(self, arm_id: str) -> Optional[ArmStats]:
        stats = self.stats.get(arm_id)
        return stats.copy() if stats is not None else None

    async def save_arm_stats(self, stats: ArmStats) -> None:
        self.stats[stats.arm_id] = stats.copy()

    async def apply_reward(self, arm_id: str, reward: float, ts: Optional[datetime] = None) -> ArmStats:
        async with self._locks.hold(("stats", arm_id)):
            stats = self.stats.setdefault(arm_id, ArmStats(arm_id=arm_id))
            stats.record(reward, ts or utcnow())
            return stats.copy()

    async def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        return self.assignments.get((experiment_id, user_id))

    async def save_assignment(self, assignment: Assignment) -> None:
        self.assignments[(assignment.experiment_id, assignment.user_id)] = assignment

    async def get_linucb_model(self, arm_id: str) -> Optional[LinUCBModel]:
        payload = self.models.get(arm_id)
        return LinUCBModel.from_dict(payload) if payload is not None else None

    async def save_linucb_model(self, model: LinUCBModel) -> None:
        self.models[model.arm_id] = model.to_dict()

    async def save_pending_reward(self, pending: PendingReward) -> None:
        self.pending[pending.id] = PendingReward.from_dict(pending.to_dict())

    async def get_pending_reward(self, pending_id: str) -> Optional[PendingReward]:
        pending = self.pending.get(pending_id)
        return PendingReward.from_dict(pending.to_dict()) if pending is not None else None

    async def get_pending_rewards_by_user(
        self, user_id: str, experiment_id: Optional[str] = None
    ) -> List[PendingReward]:
        matches = [
            PendingReward.from_dict(p.to_dict())
            for p in self.pending.values()
            if p.user_id == user_id and (experiment_id is None or p.experiment_id == experiment_id)
        ]
        matches.sort(key=lambda p: p.assigned_at, reverse=True)
        return matches

    def _expired(self, now: datetime) -> List[PendingReward]:
        expired = [
            p for p in self.pending.values()
            if p.expires_at < now and not p.converted and p.processed_at is None
        ]
        expired.sort(key=lambda p: p.expires_at)
        return expired

    async def get_expired_pending_rewards(self, now: datetime, limit: int) -> List[PendingReward]:
        return [PendingReward.from_dict(p.to_dict()) for p in self._expired(now)[:limit]]

    async def count_expired_pending_rewards(self, now: datetime) -> int:
        return len(self._expired(now))

    async def save_conversion_link(self, link: ConversionLink) -> None:
        self.links.append(link)

    async def get_conversion_links(self, transaction_id: str) -> List[ConversionLink]:
        return [link for link in self.links if link.transaction_id == transaction_id]

    async def get_objective_stats(self, arm_id: str, objective: ObjectiveType) -> Optional[ArmObjectiveStats]:
        stats = self.objectives.get((arm_id, objective))
        return ArmObjectiveStats.from_dict(stats.to_dict()) if stats is not None else None

    async def save_objective_stats(self, stats: ArmObjectiveStats) -> None:
        self.objectives[(stats.arm_id, stats.objective)] = ArmObjectiveStats.from_dict(stats.to_dict())

    async def get_all_objective_stats(self, arm_id: str) -> Dict[ObjectiveType, ArmObjectiveStats]:
        return {
            objective: ArmObjectiveStats.from_dict(stats.to_dict())
            for (owner, objective), stats in self.objectives.items()
            if owner == arm_id
        }

    async def apply_objective_reward(
        self,
        arm_id: str,
        objective: ObjectiveType,
        reward: float,
        ltv: Optional[float] = None,
    ) -> ArmObjectiveStats:
        async with self._locks.hold(("objective", arm_id, objective)):
            stats = self.objectives.setdefault(
                (arm_id, objective), ArmObjectiveStats(arm_id=arm_id, objective=objective)
            )
            stats.record(reward, ltv)
            return ArmObjectiveStats.from_dict(stats.to_dict())
