from datetime import timedelta

import pytest

from pagerops.app_state import AppState
from pagerops.entities import Alert, User
from pagerops.errors import AuthError, NoDraftError, NotFoundError, TransientNetworkError

from .fixtures import NOW, FakeProvider, make_incident, make_service


@pytest.fixture
def provider():
    return FakeProvider(
        services=[make_service("PSVC1", "API"), make_service("PSVC2", "Web")],
        open_incidents=[
            make_incident("PINC1", title="Checkout latency", assigned_user_ids=["PUSER1"]),
            make_incident("PINC2", status="acknowledged", urgency="low", title="Disk usage"),
            make_incident("PINC3", service="Web", service_id="PSVC2", title="5xx spike"),
        ],
        users=[User(id="PUSER1", email="oncall@example.com", name="On Call")],
    )


@pytest.fixture
def state(engine, provider):
    notified = []
    state = AppState.from_engine(engine, provider_factory=lambda key: provider)
    state.notifier.notify = notified.extend
    state.notified = notified
    state.startup(start_polling=False)
    state.update_settings(api_key="u+secret")
    state.refresh_now()
    yield state
    state.shutdown()


class TestConnect:

    def test_no_key_means_no_provider(self, engine, provider):
        state = AppState.from_engine(engine, provider_factory=lambda key: provider)
        state.startup(start_polling=False)

        assert state.provider is None
        with pytest.raises(AuthError):
            state.acknowledge("PINC1")
        status = state.refresh_now()
        assert status.paused is True

    def test_key_change_reconnects_and_resumes(self, state):
        assert state.provider is not None
        assert state.sync_status().state.value == "idle"
        assert state.sync_status().paused is False


class TestRefresh:

    def test_refresh_populates_views(self, state):
        assert {i.id for i in state.incidents()} == {"PINC1", "PINC2", "PINC3"}
        assert [s.name for s in state.services()] == ["API", "Web"]
        assert state.status_counts().triggered == 2
        assert [u.id for u in state.users()] == ["PUSER1"]

    def test_new_triggered_incidents_are_notified(self, state):
        assert {i.id for i in state.notified} == {"PINC1", "PINC3"}

    def test_service_counts_come_from_aggregate(self, state):
        counts = {s.id: s.incident_count for s in state.services()}
        assert counts == {"PSVC1": 2, "PSVC2": 1}

    def test_only_active_services_are_fetched(self, state, provider):
        state.toggle_service("PSVC2", False)
        state.refresh_now()

        assert provider.filters[-1].service_ids == ["PSVC1"]
        assert state.status_counts().triggered == 1

    def test_all_services_off_fetches_service_list_only(self, state, provider):
        state.toggle_service("PSVC1", False)
        state.toggle_service("PSVC2", False)
        provider.calls.clear()

        state.refresh_now()

        assert provider.calls == ["list_services"]

    def test_assigned_only_filters_by_current_user(self, state, provider):
        state.update_settings(assigned_only=True)
        state.refresh_now()

        assert provider.filters[-1].user_ids == ["PUSER1"]

    def test_service_toggle_is_remembered(self, state, engine, provider):
        state.toggle_service("PSVC2", False)

        restarted = AppState.from_engine(engine, provider_factory=lambda key: provider)
        restarted.startup(start_polling=False)

        assert restarted.store.get("service", "PSVC2").active is False

    def test_deleted_service_is_forgotten(self, state, engine, provider):
        state.toggle_service("PSVC2", False)

        state.delete_service("PSVC2")

        assert [s.id for s in state.services()] == ["PSVC1"]
        restarted = AppState.from_engine(engine, provider_factory=lambda key: provider)
        restarted.startup(start_polling=False)
        assert restarted.store.get("service", "PSVC2") is None
        with pytest.raises(NotFoundError):
            state.delete_service("PSVC2")


class TestStatusChanges:

    def test_acknowledge_is_optimistic(self, state, provider):
        incident = state.acknowledge("PINC1")

        assert incident.status == "acknowledged"
        assert "acknowledge:PINC1" in provider.calls
        assert state.status_counts().acknowledged == 2

    def test_stale_refresh_keeps_pending_status(self, state):
        state.resolve("PINC1")
        # provider still lists PINC1 as triggered
        state.refresh_now()

        assert state.store.get("incident", "PINC1").status == "resolved"

    def test_failed_call_reverts(self, state, provider):
        provider.action_error = TransientNetworkError("timeout")

        with pytest.raises(TransientNetworkError):
            state.acknowledge("PINC1")

        assert state.store.get("incident", "PINC1").status == "triggered"
        assert state.store.pending_fields("incident", "PINC1") == {}

    def test_unknown_incident(self, state):
        with pytest.raises(NotFoundError):
            state.resolve("PNOPE")

    def test_escalate(self, state, provider):
        incident = state.escalate("PINC1", 2)

        assert incident.id == "PINC1"
        assert "escalate:PINC1:2" in provider.calls

    def test_snooze_merges_returned_incident(self, state, provider):
        incident = state.snooze("PINC1", 30)

        assert "snooze:PINC1:1800" in provider.calls
        assert incident.status == "acknowledged"
        assert state.status_counts().acknowledged == 2

    def test_snooze_needs_a_duration(self, state, provider):
        with pytest.raises(ValueError):
            state.snooze("PINC1", 0)
        assert provider.calls[-1] == "fetch_batch"

    def test_merge_resolves_sources(self, state, provider):
        target = state.merge_incidents("PINC1", ["PINC3", "PINC3"])

        assert target.id == "PINC1"
        assert provider.merges == [("PINC1", ["PINC3"])]
        assert state.store.get("incident", "PINC3").status == "resolved"
        # stale poll still lists PINC3 as triggered
        state.refresh_now()
        assert state.store.get("incident", "PINC3").status == "resolved"

    def test_failed_merge_reverts_sources(self, state, provider):
        provider.action_error = TransientNetworkError("timeout")

        with pytest.raises(TransientNetworkError):
            state.merge_incidents("PINC1", ["PINC2", "PINC3"])

        assert state.store.get("incident", "PINC2").status == "acknowledged"
        assert state.store.get("incident", "PINC3").status == "triggered"
        assert state.store.pending_fields("incident", "PINC3") == {}

    def test_merge_with_unknown_source_changes_nothing(self, state, provider):
        with pytest.raises(NotFoundError):
            state.merge_incidents("PINC1", ["PINC3", "PNOPE"])

        assert state.store.get("incident", "PINC3").status == "triggered"
        assert state.store.pending_fields("incident", "PINC3") == {}
        assert provider.merges == []

    def test_merge_into_itself(self, state):
        with pytest.raises(ValueError):
            state.merge_incidents("PINC1", ["PINC1"])
        with pytest.raises(ValueError):
            state.merge_incidents("PINC1", [])


class TestAlerts:

    def test_alerts_are_cached_oldest_first(self, state, provider):
        provider.alerts["PINC1"] = [
            Alert(id="PAL2", incident_id="PINC1", summary="p99 > 2s", created_at=NOW + timedelta(minutes=1)),
            Alert(id="PAL1", incident_id="PINC1", summary="p99 > 1s", created_at=NOW, details={"host": "api-1"}),
        ]

        alerts = state.incident_alerts("PINC1")

        assert [a.id for a in alerts] == ["PAL1", "PAL2"]
        assert state.store.get("alert", "PAL1").details == {"host": "api-1"}

    def test_alerts_of_other_incidents_are_excluded(self, state, provider):
        provider.alerts["PINC1"] = [Alert(id="PAL1", incident_id="PINC1")]
        provider.alerts["PINC3"] = [Alert(id="PAL9", incident_id="PINC3")]
        state.incident_alerts("PINC1")

        assert [a.id for a in state.incident_alerts("PINC3")] == ["PAL9"]

    def test_unknown_incident(self, state):
        with pytest.raises(NotFoundError):
            state.incident_alerts("PNOPE")


class TestDrafts:

    def test_commit_posts_note_and_caches_it(self, state, provider):
        state.set_draft("PINC1", note_text="Rolled back")

        note = state.commit_draft("PINC1")

        assert provider.notes == [("PINC1", "Rolled back")]
        assert note.author == "On Call"
        assert state.store.get("incident", "PINC1").notes == [note]
        assert state.get_draft("PINC1") is None

    def test_failed_post_keeps_draft(self, state, provider):
        state.set_draft("PINC1", note_text="Rolled back")
        provider.action_error = TransientNetworkError("timeout")

        with pytest.raises(TransientNetworkError):
            state.commit_draft("PINC1")

        assert state.get_draft("PINC1").note_text == "Rolled back"

    def test_edit_during_post_is_kept(self, state, provider):
        state.set_draft("PINC1", note_text="Rolled back")
        provider.on_add_note = lambda incident_id, text: state.set_draft(incident_id, impact="checkout")

        note = state.commit_draft("PINC1")

        assert provider.notes == [("PINC1", "Rolled back")]
        assert note.content == "Rolled back"
        assert [n.content for n in state.store.get("incident", "PINC1").notes] == ["Rolled back"]
        assert state.get_draft("PINC1").impact == "checkout"

    def test_commit_without_draft(self, state, provider):
        with pytest.raises(NoDraftError):
            state.commit_draft("PINC1")
        assert provider.notes == []

    def test_drafts_survive_restart(self, state, engine, provider):
        state.set_draft("PINC2", impact="reads slow")
        state.shutdown()

        restarted = AppState.from_engine(engine, provider_factory=lambda key: provider)
        restarted.startup(start_polling=False)

        assert restarted.get_draft("PINC2").impact == "reads slow"

    def test_incident_cache_survives_restart(self, state, engine, provider):
        state.pin_incident("PINC3", True)
        state.set_draft("PINC1", note_text="Rolled back")
        note = state.commit_draft("PINC1")
        state.acknowledge("PINC1")
        state.shutdown()

        restarted = AppState.from_engine(engine, provider_factory=lambda key: provider)
        restarted.startup(start_polling=False)

        assert {i.id for i in restarted.incidents()} == {"PINC1", "PINC2", "PINC3"}
        assert restarted.store.get("incident", "PINC3").pinned is True
        incident = restarted.store.get("incident", "PINC1")
        assert incident.status == "acknowledged"
        assert incident.notes == [note]
        counts = restarted.status_counts()
        assert (counts.triggered, counts.acknowledged) == (1, 2)

    def test_pin_survives_restart_and_next_poll(self, state, engine, provider):
        state.pin_incident("PINC2", True)
        state.shutdown()

        restarted = AppState.from_engine(engine, provider_factory=lambda key: provider)
        restarted.startup(start_polling=False)
        restarted.refresh_now()

        assert restarted.store.get("incident", "PINC2").pinned is True
        restarted.shutdown()

    def test_apply_template(self, state):
        template = state.save_template("Mitigated", "Mitigation in place")

        draft = state.apply_template("PINC1", template.id)

        assert draft.note_text == "Mitigation in place"
        assert [t.title for t in state.list_templates()] == ["Mitigated"]

    def test_delete_template(self, state):
        template = state.save_template("Mitigated", "Mitigation in place")
        state.delete_template(template.id)

        assert state.list_templates() == []
        with pytest.raises(NotFoundError):
            state.apply_template("PINC1", template.id)


class TestViewState:

    def test_search_matches_title_service_and_id(self, state):
        state.set_search_query("disk")
        assert [i.id for i in state.visible_incidents()] == ["PINC2"]

        state.set_search_query("web")
        assert [i.id for i in state.visible_incidents()] == ["PINC3"]

    @pytest.mark.parametrize(
        "filter_type, expected",
        [
            ("triggered", {"PINC1", "PINC3"}),
            ("acknowledged", {"PINC2"}),
            ("low", {"PINC2"}),
            ("mine", {"PINC1"}),
            ("", {"PINC1", "PINC2", "PINC3"}),
        ],
    )
    def test_filters(self, state, filter_type, expected):
        state.set_filter(filter_type)
        assert {i.id for i in state.visible_incidents()} == expected

    def test_pinned_filter(self, state):
        state.pin_incident("PINC3", True)
        state.set_filter("pinned")

        assert [i.id for i in state.visible_incidents()] == ["PINC3"]

    def test_resolved_tab(self, state):
        state.resolve("PINC1")
        state.set_active_tab("resolved")

        assert [i.id for i in state.visible_incidents()] == ["PINC1"]

    def test_bad_filter_and_tab(self, state):
        with pytest.raises(ValueError):
            state.set_filter("sev1")
        with pytest.raises(ValueError):
            state.set_active_tab("archived")

    def test_select_incident(self, state):
        state.select_incident("PINC2")
        assert state.selected_incident().id == "PINC2"

        state.select_incident(None)
        assert state.selected_incident() is None

        with pytest.raises(NotFoundError):
            state.select_incident("PNOPE")

    def test_settings_view_is_masked(self, state):
        assert state.settings_view().api_key == "****cret"
