"""Tests for evaluation explanations."""
from reliefgrid.shared.models import NeedStatus
from reliefgrid.services.need_engine.reasoning import (
    build_reasoning,
    explain_guardrail,
)


class TestExplainGuardrail:

    def test_known_guardrail(self):
        assert "Critical" in explain_guardrail("A_red_floor")

    def test_clamp(self):
        assert explain_guardrail("transition_clamped_to_YELLOW") == (
            "transition not legal; stepped to nearest legal status: YELLOW"
        )

    def test_unknown_id_is_returned_as_is(self):
        assert explain_guardrail("Z_custom") == "Z_custom"


class TestBuildReasoning:

    def test_rule_reasoning(self):
        text = build_reasoning(
            strategy_is_advisory=False,
            final_status=NeedStatus.RED,
            applied=["B_insufficiency_red_floor"],
            previous_status=NeedStatus.WHITE,
            proposed_status=NeedStatus.WHITE,
        )

        assert text.startswith("High insufficiency detected with no active coverage.")
        assert "Status set to Critical." in text
        assert "Safety rule: insufficiency is strong with no coverage" in text

    def test_advisory_without_guardrails(self):
        text = build_reasoning(
            strategy_is_advisory=True,
            final_status=NeedStatus.YELLOW,
            applied=[],
            previous_status=NeedStatus.ORANGE,
            proposed_status=NeedStatus.YELLOW,
            advisory_summary="New water trucks committed.",
        )

        assert text == "New water trucks committed."

    def test_advisory_change_prevented(self):
        text = build_reasoning(
            strategy_is_advisory=True,
            final_status=NeedStatus.ORANGE,
            applied=["F_block_orange_to_yellow"],
            previous_status=NeedStatus.ORANGE,
            proposed_status=NeedStatus.YELLOW,
            advisory_summary="Situation easing",
        )

        assert text.startswith("Situation easing. However, safety rules prevented this change")
        assert text.endswith("Status remains Insufficient coverage.")

    def test_advisory_overridden(self):
        text = build_reasoning(
            strategy_is_advisory=True,
            final_status=NeedStatus.RED,
            applied=["A_red_floor"],
            previous_status=NeedStatus.YELLOW,
            proposed_status=NeedStatus.GREEN,
            advisory_summary="",
        )

        assert text.startswith("Advisory proposal received. Safety rules applied:")
        assert text.endswith("Status set to Critical.")

    def test_fallback_is_mentioned(self):
        text = build_reasoning(
            strategy_is_advisory=False,
            final_status=NeedStatus.WHITE,
            applied=[],
            previous_status=NeedStatus.WHITE,
            proposed_status=NeedStatus.WHITE,
            fallback_reason="AdvisoryTimeoutError: timed out",
        )

        assert text.endswith("Advisory service unavailable, rule baseline used.")
