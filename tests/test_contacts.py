"""Tests for contact reconciliation."""

from __future__ import annotations

from konsul.contacts import plan_updates, reconcile_contact


class TestPlanUpdates:
    def test_standard_fields_match_case_insensitively(self):
        plan = plan_updates({"Name": "Omar", "EMAIL": "omar@example.com"}, set())
        assert plan.standard == {"name": "Omar", "email": "omar@example.com"}
        assert plan.custom == {}

    def test_custom_fields_exact_then_lowercase(self):
        plan = plan_updates({"companySize": "50", "Budget": "10k"}, {"companySize", "budget"})
        assert plan.custom == {"companySize": "50", "budget": "10k"}

    def test_undeclared_keys_are_dropped(self):
        plan = plan_updates({"favouriteColour": "blue", "name": "Omar"}, {"budget"})
        assert plan.dropped == ["favouriteColour"]
        assert "favouriteColour" not in plan.custom


class TestReconcileContact:
    def _declare(self, store, make_agent, *keys):
        store.add_agent(make_agent(
            id="agent-2",
            custom_fields=[{"key": key, "label": key.title()} for key in keys],
        ))

    def test_name_from_short_reply_is_stored(self, store):
        result = reconcile_contact(store, "contact-1", {"name": "Omar"})

        assert result.success
        assert store.get_contact("contact-1").name == "Omar"

    def test_custom_fields_are_shallow_merged(self, store, make_agent):
        self._declare(store, make_agent, "budget", "plan")
        reconcile_contact(store, "contact-1", {"budget": "10k"})
        reconcile_contact(store, "contact-1", {"plan": "Pro", "budget": "20k"})

        assert store.get_contact("contact-1").custom_data == {"budget": "20k", "plan": "Pro"}

    def test_applying_twice_equals_applying_once(self, store, make_agent):
        self._declare(store, make_agent, "budget")
        update = {"name": "Omar", "budget": "10k", "unknown": "x"}

        reconcile_contact(store, "contact-1", update)
        once = store.get_contact("contact-1")
        reconcile_contact(store, "contact-1", update)
        twice = store.get_contact("contact-1")

        assert once == twice
        assert "unknown" not in twice.custom_data

    def test_custom_keys_declared_by_any_workspace_agent_are_accepted(self, store, make_agent):
        self._declare(store, make_agent, "budget")
        result = reconcile_contact(store, "contact-1", {"budget": "5k"})
        assert result.success
        assert result.applied == ["budget"]

    def test_missing_contact_reports_failure(self, store):
        result = reconcile_contact(store, "nope", {"name": "Omar"})
        assert not result.success
        assert result.error == "Contact not found"

    def test_all_invalid_keys_report_failure_without_writing(self, store):
        before = store.get_contact("contact-1")
        result = reconcile_contact(store, "contact-1", {"shoeSize": "42"})

        assert not result.success
        assert result.dropped == ["shoeSize"]
        assert store.get_contact("contact-1") == before

    def test_non_string_standard_values_are_stringified(self, store):
        reconcile_contact(store, "contact-1", {"phone": 5551234})
        assert store.get_contact("contact-1").phone == "5551234"
