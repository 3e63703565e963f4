from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from stakeapi.models.dispute import Dispute as DisputeModel, DisputeStatus
from stakeapi.repositories.base import BaseRepository
from stakeapi.schemas.dispute import DisputeResponse


class DisputeRepository(BaseRepository[DisputeModel, DisputeResponse]):
    def __init__(self, db: Session):
        super().__init__(DisputeModel, DisputeResponse, db)

    def to_schema(self, dispute: DisputeModel) -> DisputeResponse:
        return self._to_schema(dispute)

    def get_for_update(self, dispute_id: str) -> Optional[DisputeModel]:
        return self._get_model_for_update(dispute_id)

    def add(self, dispute: DisputeModel) -> DisputeModel:
        self.db.add(dispute)
        self.db.flush()
        return dispute

    def find_open(self, challenge_id: str, raised_by_id: str) -> Optional[DisputeModel]:
        return (
            self.db.query(DisputeModel)
            .filter(
                DisputeModel.challenge_id == challenge_id,
                DisputeModel.raised_by_id == raised_by_id,
                DisputeModel.status != DisputeStatus.RESOLVED.value,
            )
            .first()
        )

    def open_for_challenge(self, challenge_id: str) -> List[DisputeModel]:
        return (
            self.db.query(DisputeModel)
            .filter(
                DisputeModel.challenge_id == challenge_id,
                DisputeModel.status != DisputeStatus.RESOLVED.value,
            )
            .all()
        )

    def list_disputes(
        self, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[DisputeResponse]:
        query = self.db.query(DisputeModel)
        if status:
            query = query.filter(DisputeModel.status == status)
        rows = (
            query.order_by(DisputeModel.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._to_schema(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(DisputeModel.status, func.count(DisputeModel.id))
            .group_by(DisputeModel.status)
            .all()
        )
        return {row[0]: int(row[1]) for row in rows}
