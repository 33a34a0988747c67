from enum import Enum


class RequestStatus(str, Enum):
    pending = 'pending'
    confirmed = 'confirmed'
    completed = 'completed'

    @classmethod
    def normalize(cls, value):
        if value is None or value == '':
            return cls.pending
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:  # noqa: BLE001
            allowed = ', '.join(member.value for member in cls)
            raise ValueError(f"status must be one of: {allowed}") from exc


class MatchStatus(str, Enum):
    unmatched = 'unmatched'
    accepted = 'accepted'
    rejected = 'rejected'

    @classmethod
    def normalize(cls, value):
        if value is None or value == '':
            return cls.unmatched
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:  # noqa: BLE001
            allowed = ', '.join(member.value for member in cls)
            raise ValueError(f"match_status must be one of: {allowed}") from exc


class MoveStatus(str, Enum):
    pending = 'pending'
    confirmed = 'confirmed'
    completed = 'completed'

    @classmethod
    def normalize(cls, value):
        if value is None or value == '':
            return cls.pending
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:  # noqa: BLE001
            allowed = ', '.join(member.value for member in cls)
            raise ValueError(f"move status must be one of: {allowed}") from exc


class CandidateType(str, Enum):
    # request <-> request
    same_route = 'same_route'
    complementary_route = 'complementary_route'
    # request <-> move (carrier assigned)
    direct = 'direct'
    return_trip = 'return_trip'


class RecordType(str, Enum):
    perfect = 'perfect'
    partial = 'partial'
    rejected = 'rejected'
    completed = 'completed'


class EntityKind(str, Enum):
    client = 'client'
    move = 'move'
    match = 'match'


def normalized_value(enum_cls, value, default=None):
    """Return the normalized string value for an enum, falling back to default when invalid."""
    if value is None or value == '':
        return default
    normalizer = getattr(enum_cls, 'normalize', None)
    if callable(normalizer):
        try:
            normalized = normalizer(value)
        except ValueError:
            return default
        if normalized is None:
            return default
        if isinstance(normalized, enum_cls):
            return normalized.value
        return normalized
    if isinstance(value, enum_cls):
        return value.value
    candidate = str(value).strip().lower()
    if not candidate:
        return default
    try:
        return enum_cls(candidate).value
    except ValueError:
        return default
