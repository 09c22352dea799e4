"""Tests for system prompt composition."""

from __future__ import annotations

from datetime import UTC, datetime

from konsul.prompts import build_system_prompt

NOW = datetime(2026, 2, 17, 14, 30, tzinfo=UTC)


class TestDeterminism:
    def test_identical_inputs_give_identical_output(self, make_agent):
        agent = make_agent(
            transfer_to_human=True,
            custom_fields=[{"key": "budget", "label": "Budget"}],
            handoff_targets=[{"id": "sales", "name": "Sales", "email": "s@acme.test"}],
        )
        passages = ["Opening hours are 9 to 5.", "We are closed on Sundays."]

        first = build_system_prompt(agent, passages, now=NOW)
        second = build_system_prompt(agent, list(passages), now=NOW)

        assert first == second

    def test_passage_order_is_preserved(self, make_agent):
        prompt = build_system_prompt(make_agent(), ["first passage", "second passage"], now=NOW)
        assert "[BLOCK 1]: first passage" in prompt
        assert "[BLOCK 2]: second passage" in prompt
        assert prompt.index("first passage") < prompt.index("second passage")


class TestIdentityAndPersona:
    def test_identity_includes_name_company_and_local_time(self, make_agent):
        agent = make_agent(timezone="America/Panama")
        prompt = build_system_prompt(agent, [], now=NOW)
        assert "**Sofia**" in prompt
        assert "**Acme Rentals**" in prompt
        # 14:30 UTC is 09:30 in Panama (UTC-5, no DST).
        assert "09:30 (America/Panama)" in prompt

    def test_unknown_timezone_falls_back_to_utc(self, make_agent):
        prompt = build_system_prompt(make_agent(timezone="Mars/Olympus"), [], now=NOW)
        assert "14:30 (UTC)" in prompt

    def test_persona_is_verbatim_and_highest_priority(self, make_agent):
        agent = make_agent(personality_prompt="Always answer like a pirate.")
        prompt = build_system_prompt(agent, [], now=NOW)
        assert "HIGHEST PRIORITY" in prompt
        assert "Always answer like a pirate." in prompt

    def test_style_and_job_instructions(self, make_agent):
        prompt = build_system_prompt(make_agent(communication_style="FORMAL", job_type="SALES"), [], now=NOW)
        assert "formal, professional tone" in prompt
        assert "sales agent" in prompt


class TestFeatureFlags:
    def test_emoji_and_signature_directives(self, make_agent):
        prompt = build_system_prompt(make_agent(allow_emojis=False, sign_messages=True), [], now=NOW)
        assert "Do not use emojis" in prompt
        assert "Sign your messages" in prompt

    def test_restrict_topics_directive(self, make_agent):
        assert "Only answer questions related" in build_system_prompt(
            make_agent(restrict_topics=True), [], now=NOW,
        )
        assert "Only answer questions related" not in build_system_prompt(make_agent(), [], now=NOW)

    def test_calendar_directive_only_with_enabled_integration(self, make_agent):
        calendly = {"provider": "CALENDLY", "config": {"api_token": "tok"}}
        assert "list_availability" in build_system_prompt(
            make_agent(integrations=[calendly]), [], now=NOW,
        )
        disabled = {**calendly, "enabled": False}
        assert "list_availability" not in build_system_prompt(
            make_agent(integrations=[disabled]), [], now=NOW,
        )


class TestKnowledgeBlock:
    def test_passages_carry_no_fabrication_directive(self, make_agent):
        prompt = build_system_prompt(make_agent(), ["Rent is $500."], now=NOW)
        assert "DO NOT FABRICATE" in prompt

    def test_no_passages_states_missing_context(self, make_agent):
        prompt = build_system_prompt(make_agent(), [], now=NOW)
        assert "No documents were retrieved" in prompt
        assert "[BLOCK" not in prompt


class TestCaptureAndEscalation:
    def test_custom_fields_list_key_label_and_options(self, make_agent):
        agent = make_agent(custom_fields=[
            {"key": "plan", "label": "Plan", "description": "Desired plan", "type": "SELECT",
             "options": ["Basic", "Pro"]},
        ])
        prompt = build_system_prompt(agent, [], now=NOW)
        assert '- Plan (key: "plan"): Desired plan [Valid options: Basic, Pro]' in prompt
        assert "update_contact" in prompt

    def test_standard_contact_block_always_present(self, make_agent):
        prompt = build_system_prompt(make_agent(), [], now=NOW)
        assert "Contact Details (ALWAYS ACTIVE)" in prompt
        assert "Soy Omar" in prompt

    def test_escalation_block_absent_when_transfer_disabled(self, make_agent):
        prompt = build_system_prompt(make_agent(transfer_to_human=False), [], now=NOW)
        assert "Human Handoff Protocol" not in prompt
        assert "never promise one" in prompt

    def test_escalation_block_lists_departments(self, make_agent):
        agent = make_agent(
            transfer_to_human=True,
            handoff_targets=[
                {"id": "billing", "name": "Billing", "description": "Invoices and payments"},
            ],
        )
        prompt = build_system_prompt(agent, [], now=NOW)
        assert "Human Handoff Protocol" in prompt
        assert '- ID: "billing" | Name: "Billing" | Context: Invoices and payments' in prompt

    def test_business_api_block_only_when_enabled(self, make_agent):
        altaplaza = {"provider": "ALTAPLAZA", "config": {"api_key": "k"}}
        assert "Altaplaza Protocol" in build_system_prompt(make_agent(integrations=[altaplaza]), [], now=NOW)
        assert "Altaplaza Protocol" not in build_system_prompt(make_agent(), [], now=NOW)
