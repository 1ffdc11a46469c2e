"""
Participant normalization.

Participant records arrive under several historical spellings of the same
logical fields. Each logical field has an explicit alias priority list; the
first non-empty alias wins. Call sites never branch on the source shape.
"""

import logging
from decimal import InvalidOperation
from typing import Any, Iterable, Mapping, Union

from pydantic import ValidationError as SchemaError

from .allocation import as_decimal
from .errors import MissingPartnerIdentifier, ValidationError
from .models import Participant

logger = logging.getLogger(__name__)

PARTNER_ID_ALIASES = (
    "partner_airtable_id",
    "agent_id",
    "airtable_id",
    "partner_id",
    "external_id",
    "id",
)
NAME_ALIASES = ("partner_name", "name", "agent_name")
ROLE_ALIASES = ("partner_role", "role")
EMAIL_ALIASES = ("partner_email", "email", "agent_email")
SPLIT_ALIASES = ("split_pct", "split")

DEFAULT_ROLE = "Partner"

# (lower-cased name fragment, role) pairs; exact-name matches are listed separately
ROLE_OVERRIDES = (
    ("lumino income fund", "Fund I"),
    ("lumino (company)", "Company"),
)
EXACT_ROLE_OVERRIDES = {"lumino": "Company"}

RawParticipant = Union[Mapping[str, Any], Participant]


def _first_text(raw: Mapping[str, Any], aliases: Iterable[str]) -> str:
    for alias in aliases:
        value = raw.get(alias)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _first_present(raw: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    for alias in aliases:
        if raw.get(alias) is not None:
            return raw[alias]
    return None


def normalize_role(name: str, role: str) -> str:
    lowered = name.lower()
    for fragment, override in ROLE_OVERRIDES:
        if fragment in lowered:
            return override
    if lowered in EXACT_ROLE_OVERRIDES:
        return EXACT_ROLE_OVERRIDES[lowered]
    return role or DEFAULT_ROLE


def _as_mapping(raw: RawParticipant) -> Mapping[str, Any]:
    if isinstance(raw, Participant):
        return {
            "partner_id": raw.partner_id,
            "name": raw.name,
            "role": raw.role,
            "email": raw.email,
            "split_pct": raw.split_pct,
        }
    return raw


def extract_partner_id(raw: RawParticipant) -> str:
    return _first_text(_as_mapping(raw), PARTNER_ID_ALIASES)


def normalize_participant(raw: RawParticipant) -> Participant:
    data = _as_mapping(raw)
    name = _first_text(data, NAME_ALIASES)
    partner_id = _first_text(data, PARTNER_ID_ALIASES)
    if not partner_id:
        raise MissingPartnerIdentifier([name or "Unknown"])

    role = normalize_role(name, _first_text(data, ROLE_ALIASES))
    email = _first_text(data, EMAIL_ALIASES) or None

    try:
        return Participant(
            partner_id=partner_id,
            name=name,
            role=role,
            email=email,
            split_pct=as_decimal(_first_present(data, SPLIT_ALIASES)),
        )
    except (SchemaError, InvalidOperation) as e:
        raise ValidationError(f"Invalid split for participant {name or partner_id}: {e}")


def normalize_participants(raws: Iterable[RawParticipant]) -> list[Participant]:
    """
    Normalize a full participant set.

    Every record is checked before anything is returned, and a single
    MissingPartnerIdentifier names every offender.
    """
    normalized: list[Participant] = []
    missing: list[str] = []
    for raw in raws:
        try:
            normalized.append(normalize_participant(raw))
        except MissingPartnerIdentifier as e:
            missing.extend(e.names)

    if missing:
        logger.error(f"Missing partner IDs for participants: {', '.join(missing)}")
        raise MissingPartnerIdentifier(missing)
    return normalized
