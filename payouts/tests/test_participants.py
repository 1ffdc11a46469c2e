"""
Unit Tests for Participant Normalization

Tests cover:
1. Alias priority per logical field
2. Partner identifier enforcement
3. Role overrides
"""

import pytest
from decimal import Decimal

from payouts.errors import MissingPartnerIdentifier, ValidationError
from payouts.models import Participant
from payouts.participants import (
    extract_partner_id,
    normalize_participant,
    normalize_participants,
    normalize_role,
)


class TestAliasPriority:
    """Tests for the alias priority lists."""

    def test_partner_airtable_id_wins_over_agent_id(self):
        """The first alias in priority order is used."""
        raw = {"agent_id": "recAGENT", "partner_airtable_id": "recPARTNER", "id": "recID"}
        assert extract_partner_id(raw) == "recPARTNER"

    def test_blank_alias_falls_through(self):
        """Empty or whitespace values do not count as present."""
        raw = {"partner_airtable_id": "   ", "agent_id": "", "airtable_id": " recAIR "}
        assert extract_partner_id(raw) == "recAIR"

    def test_agent_shape(self):
        """Older agent-style records normalize to the same participant."""
        participant = normalize_participant({
            "agent_id": "recA",
            "agent_name": "Alice",
            "agent_email": "alice@example.com",
            "role": "Agent",
            "split": 25,
        })

        assert participant == Participant(
            partner_id="recA", name="Alice", role="Agent",
            email="alice@example.com", split_pct=Decimal("25"),
        )

    def test_partner_shape(self):
        """Partner-style records use the partner_* spellings."""
        participant = normalize_participant({
            "partner_airtable_id": "recB",
            "partner_name": "Bob",
            "partner_role": "ISO",
            "split_pct": "12.5",
        })

        assert participant.partner_id == "recB"
        assert participant.name == "Bob"
        assert participant.role == "ISO"
        assert participant.split_pct == Decimal("12.5")

    def test_missing_split_defaults_to_zero(self):
        """A participant without a split holds 0%."""
        assert normalize_participant({"id": "recC"}).split_pct == Decimal("0")

    def test_participant_instances_pass_through(self):
        """Already-normalized participants are accepted."""
        participant = Participant(partner_id="recD", name="Dana", split_pct=Decimal("10"))
        assert normalize_participant(participant) == participant


class TestPartnerIdentifier:
    """Tests for partner identifier enforcement."""

    def test_missing_identifier_raises_with_name(self):
        """The error names the participant."""
        with pytest.raises(MissingPartnerIdentifier) as exc_info:
            normalize_participant({"partner_name": "Nobody", "split_pct": 50})

        assert exc_info.value.name == "Nobody"
        assert "Missing partner IDs for participants: Nobody" in str(exc_info.value)

    def test_all_offenders_are_reported(self):
        """Normalizing a set checks every record before failing."""
        raws = [
            {"partner_airtable_id": "recA", "partner_name": "Alice", "split_pct": 50},
            {"partner_name": "Bob", "split_pct": 25},
            {"name": "Carol", "split_pct": 25},
        ]

        with pytest.raises(MissingPartnerIdentifier) as exc_info:
            normalize_participants(raws)

        # Verify no partial result, both offenders listed
        assert exc_info.value.names == ["Bob", "Carol"]

    def test_unnamed_offender_is_unknown(self):
        """Records without any name are reported as Unknown."""
        with pytest.raises(MissingPartnerIdentifier) as exc_info:
            normalize_participant({"split_pct": 10})

        assert exc_info.value.names == ["Unknown"]

    def test_out_of_range_split_is_validation_error(self):
        """Splits above 100 are rejected as a service validation error."""
        with pytest.raises(ValidationError):
            normalize_participant({"id": "recA", "split_pct": 150})

    def test_unparseable_split_is_validation_error(self):
        """Garbage splits are rejected as a service validation error."""
        with pytest.raises(ValidationError):
            normalize_participant({"id": "recA", "split_pct": "lots"})


class TestRoles:
    """Tests for role normalization."""

    def test_fund_override(self):
        """The income fund is always Fund I."""
        assert normalize_role("Lumino Income Fund LP", "Partner") == "Fund I"

    def test_company_override(self):
        """The company entity is always Company."""
        assert normalize_role("Lumino (Company)", "") == "Company"
        assert normalize_role("Lumino", "Partner") == "Company"

    def test_default_role(self):
        """Participants without a role are Partners."""
        assert normalize_participant({"id": "recA", "name": "Alice"}).role == "Partner"

    def test_explicit_role_kept(self):
        """Other names keep their given role."""
        assert normalize_role("Lumino Referral Partner", "Agent") == "Agent"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
