from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .datetime_utils import parse_day
from .enums import CandidateType, EntityKind, MatchStatus, MoveStatus, RecordType, RequestStatus
from .utils import format_reference


def _doc_to_payload(doc: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(doc)
    if 'id' not in payload and '_id' in payload:
        payload['id'] = payload['_id']
    payload.pop('_id', None)
    return payload


class _Document(BaseModel):
    model_config = ConfigDict(extra='ignore', use_enum_values=False)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]):
        return cls.model_validate(_doc_to_payload(doc))


class TransportationRequest(_Document):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    departure_postal_code: Optional[str] = None
    departure_city: Optional[str] = None
    arrival_postal_code: Optional[str] = None
    arrival_city: Optional[str] = None
    desired_date: Optional[datetime.date] = None
    estimated_volume: Optional[float] = None
    status: RequestStatus = RequestStatus.pending
    match_status: MatchStatus = MatchStatus.unmatched

    @field_validator('desired_date', mode='before')
    @classmethod
    def _parse_date(cls, v):
        return parse_day(v)

    @field_validator('status', mode='before')
    @classmethod
    def _norm_status(cls, v):
        return RequestStatus.normalize(v)

    @field_validator('match_status', mode='before')
    @classmethod
    def _norm_match_status(cls, v):
        return MatchStatus.normalize(v)

    @property
    def reference(self) -> str:
        return format_reference(EntityKind.client, self.id)


class Move(_Document):
    id: int
    company_name: Optional[str] = None
    departure_postal_code: Optional[str] = None
    departure_city: Optional[str] = None
    arrival_postal_code: Optional[str] = None
    arrival_city: Optional[str] = None
    departure_date: Optional[datetime.date] = None
    max_volume: float = 50.0
    used_volume: float = 0.0
    number_of_clients: int = 0
    status: MoveStatus = MoveStatus.pending

    @field_validator('departure_date', mode='before')
    @classmethod
    def _parse_date(cls, v):
        return parse_day(v)

    @field_validator('status', mode='before')
    @classmethod
    def _norm_status(cls, v):
        return MoveStatus.normalize(v)

    @field_validator('max_volume', mode='before')
    @classmethod
    def _default_capacity(cls, v):
        return 50.0 if v is None else v

    @field_validator('used_volume', 'number_of_clients', mode='before')
    @classmethod
    def _zero_if_missing(cls, v):
        return 0 if v is None else v

    @property
    def available_volume(self) -> float:
        return max(0.0, float(self.max_volume) - float(self.used_volume))

    @property
    def reference(self) -> str:
        return format_reference(EntityKind.move, self.id)


class DistanceResult(BaseModel):
    distance_km: int
    duration_min: int
    source: str = 'provider'  # provider | fallback | identical
    confident: bool = True


class EntityRef(BaseModel):
    kind: EntityKind
    id: int

    @property
    def reference(self) -> str:
        return format_reference(self.kind, self.id)


class MatchCandidate(BaseModel):
    left: EntityRef
    right: EntityRef
    match_type: CandidateType
    distance_km: int
    date_diff_days: int
    combined_volume: float
    match_score: float
    is_feasible: bool
    explanation: str = ''
    suggested_action: str = ''
    legs: Dict[str, int] = Field(default_factory=dict)

    @property
    def client_ids(self) -> List[int]:
        return [ref.id for ref in (self.left, self.right) if ref.kind == EntityKind.client]

    @property
    def move_id(self) -> Optional[int]:
        for ref in (self.left, self.right):
            if ref.kind == EntityKind.move:
                return ref.id
        return None


class MatchRecord(_Document):
    id: int
    reference: str
    client_id: int
    secondary_client_id: Optional[int] = None
    move_id: Optional[int] = None
    match_type: RecordType
    candidate_type: Optional[CandidateType] = None
    is_valid: bool = False
    volume_ok: bool = False
    distance_km: Optional[int] = None
    date_diff_days: Optional[int] = None
    combined_volume: float = 0.0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class ReferenceItem(BaseModel):
    id: int
    type: EntityKind
    reference: str
    name: str
    date: Optional[str] = None
    details: str = ''
    departure_postal_code: Optional[str] = None
    arrival_postal_code: Optional[str] = None
    departure_city: Optional[str] = None
    arrival_city: Optional[str] = None
    company_name: Optional[str] = None


class RouteEndpoints(BaseModel):
    label: str
    departure_postal_code: str
    arrival_postal_code: str
    departure_city: str = ''
    arrival_city: str = ''


class RelatedRoutes(BaseModel):
    client: RouteEndpoints
    move: RouteEndpoints


class ResolvedReference(BaseModel):
    item: ReferenceItem
    related_routes: Optional[RelatedRoutes] = None


# ---- request bodies ----

class CandidatePoolIn(BaseModel):
    client_ids: Optional[List[int]] = None


class MoveCandidatePoolIn(BaseModel):
    client_ids: Optional[List[int]] = None
    move_ids: Optional[List[int]] = None


class AcceptIn(BaseModel):
    candidate: MatchCandidate
    move_id: Optional[int] = None


class RejectIn(BaseModel):
    candidate: MatchCandidate
